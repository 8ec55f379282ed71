"""Optional MQTT mirror of the per-tick telemetry with publish buffering."""

import json
import logging
import threading
import time
from dataclasses import dataclass
from queue import Empty, Queue
from typing import TYPE_CHECKING, Any, Dict, Optional, Sequence

import paho.mqtt.client as mqtt

from .config import MQTTConfig

if TYPE_CHECKING:
    from .models import Alert, Equipment, KPISnapshot, ProcessRecord

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10.0


@dataclass
class Message:
    """One queued publish."""

    topic: str
    payload: Any
    retain: bool = False
    qos: int = 0


class TelemetryMirror:
    """Republishes tick output to an MQTT broker from a background thread.

    The tick loop only ever puts messages on a local queue; broker latency
    or failures never reach the push channel.
    """

    def __init__(self, config: MQTTConfig):
        self.config = config

        self._client: Optional[mqtt.Client] = None
        self._online = threading.Event()
        self._stop = threading.Event()
        self._queue: "Queue[Message]" = Queue()
        self._worker: Optional[threading.Thread] = None
        self._dry_run = False
        self._counts = {"published": 0, "dropped": 0}

    @property
    def connected(self) -> bool:
        return self._online.is_set()

    @property
    def base_topic(self) -> str:
        return f"{self.config.topic_prefix}/{self.config.site}"

    @property
    def status_topic(self) -> str:
        return f"{self.base_topic}/_status"

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "messages_published": self._counts["published"],
            "messages_dropped": self._counts["dropped"],
            "queued": self._queue.qsize(),
        }

    def connect(self, dry_run: bool = False) -> bool:
        """Connect to the broker (or pretend to) and start the publish worker."""
        self._dry_run = dry_run

        if dry_run:
            logger.info("MQTT mirror in dry-run mode, messages will only be logged")
            self._online.set()
            self._start_worker()
            return True

        client = mqtt.Client(
            client_id=self.config.client_id,
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        )
        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.will_set(
            self.status_topic, json.dumps({"state": "lost", "site": self.config.site}), retain=True
        )
        self._client = client

        logger.info(f"Mirroring telemetry to MQTT broker {self.config.broker}:{self.config.port}")
        try:
            client.connect(self.config.broker, self.config.port)
        except Exception as e:
            logger.error(f"Failed to connect to MQTT broker: {e}")
            return False
        client.loop_start()

        if not self._online.wait(CONNECT_TIMEOUT):
            logger.error(f"No CONNACK from {self.config.broker} within {CONNECT_TIMEOUT:.0f}s")
            client.loop_stop()
            return False

        self._start_worker()
        self.publish_status("online")
        return True

    def disconnect(self) -> None:
        """Stop the worker, announce offline, then drop the broker session."""
        self._stop.set()
        if self._worker is not None:
            self._worker.join(timeout=2)
            self._worker = None

        if self.connected:
            self._send(self._status_message("offline"))

        if self._client is not None and not self._dry_run:
            self._client.loop_stop()
            self._client.disconnect()

        self._online.clear()
        logger.info(f"MQTT mirror stopped: {self.stats}")

    def publish(self, topic: str, payload: Any, retain: bool = False) -> bool:
        """Queue a message under the base topic."""
        if not self.connected:
            self._counts["dropped"] += 1
            return False
        self._queue.put(
            Message(f"{self.base_topic}/{topic}", payload, retain=retain, qos=self.config.qos)
        )
        return True

    def publish_tick(
        self,
        batch: Sequence["ProcessRecord"],
        roster: Sequence["Equipment"],
        alert: Optional["Alert"],
        kpis: "KPISnapshot",
    ) -> int:
        """Mirror one tick; returns the number of queued messages."""
        queued = 0
        for record in batch:
            topic = f"process/{record.process_type.value}/{record.stage}"
            queued += self.publish(topic, record.to_dict())
        for unit in roster:
            queued += self.publish(f"equipment/{unit.id}", unit.to_dict(), retain=True)
        if alert is not None:
            queued += self.publish(f"alerts/{alert.severity.value}", alert.to_dict())
        queued += self.publish("kpi", kpis.to_dict(), retain=True)
        return queued

    def publish_status(self, state: str) -> None:
        self._queue.put(self._status_message(state))

    def _status_message(self, state: str) -> Message:
        status = {
            "state": state,
            "site": self.config.site,
            "messages_published": self._counts["published"],
            "messages_dropped": self._counts["dropped"],
            "timestamp_ms": int(time.time() * 1000),
        }
        return Message(self.status_topic, status, retain=True, qos=self.config.qos)

    def _start_worker(self) -> None:
        self._stop.clear()
        self._worker = threading.Thread(
            target=self._drain, name="mqtt-mirror", daemon=True
        )
        self._worker.start()

    def _drain(self) -> None:
        while not self._stop.is_set():
            try:
                msg = self._queue.get(timeout=0.1)
            except Empty:
                continue
            self._send(msg)

    def _send(self, msg: Message) -> None:
        body = json.dumps(msg.payload)

        if self._dry_run:
            logger.debug(f"[DRY RUN] {msg.topic}: {body[:100]}")
            self._counts["published"] += 1
            return

        if self._client is None or not self.connected:
            self._counts["dropped"] += 1
            return

        try:
            info = self._client.publish(msg.topic, body, qos=msg.qos, retain=msg.retain)
        except (OSError, ValueError) as e:
            self._counts["dropped"] += 1
            logger.error(f"Error publishing to {msg.topic}: {e}")
            return
        if info.rc == mqtt.MQTT_ERR_SUCCESS:
            self._counts["published"] += 1
        else:
            self._counts["dropped"] += 1
            logger.warning(f"Broker rejected publish to {msg.topic}: rc={info.rc}")

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if reason_code == 0:
            self._online.set()
            logger.info("Connected to MQTT broker")
        else:
            logger.error(f"MQTT connection refused: {reason_code}")

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None) -> None:
        self._online.clear()
        if reason_code != 0:
            logger.warning(f"Unexpected MQTT disconnection ({reason_code})")
