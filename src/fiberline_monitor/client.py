"""WebSocket client for the monitoring push channel."""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple

from websockets.asyncio.client import connect
from websockets.exceptions import WebSocketException

from .errors import ValidationError
from .models import ALL_ALERTS, ProcessType
from .protocol import Event, decode_event, encode_command

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]

# Client-side events, never sent by the server
DISCONNECTED = "disconnected"
MAX_RECONNECT_ATTEMPTS_REACHED = "maxReconnectAttemptsReached"


class MonitorClient:
    """Connects, authenticates and keeps its subscriptions across reconnects.

    The server forgets everything about a connection once it drops, so the
    client keeps the subscriptions it has asked for and re-issues all of them
    after every successful (re)authentication. On the first session, with
    nothing held yet, it subscribes to every process type and to all alerts.
    Heartbeat pings only run while the session is authenticated.
    """

    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        heartbeat_interval_ms: int = 30000,
        reconnect_delay_ms: int = 5000,
        reconnect_attempts: int = 5,
        connector: Callable = connect,
    ):
        self.url = url
        self.token = token
        self.heartbeat_interval = heartbeat_interval_ms / 1000.0
        self.reconnect_delay = reconnect_delay_ms / 1000.0
        self.reconnect_attempts = reconnect_attempts
        self._connector = connector

        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._subscriptions: Dict[Tuple[str, str], Any] = {}
        self._ws = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._running = False
        self.authenticated = False
        self.sessions = 0

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def subscriptions(self) -> List[Tuple[str, str]]:
        return list(self._subscriptions)

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def on(self, event: str, callback: Listener) -> None:
        self._listeners[event].append(callback)

    def off(self, event: str, callback: Optional[Listener] = None) -> None:
        if callback is None:
            self._listeners.pop(event, None)
        elif callback in self._listeners.get(event, ()):
            self._listeners[event].remove(callback)

    def _emit(self, event: str, data: Any) -> None:
        for callback in list(self._listeners.get(event, ())):
            try:
                callback(data)
            except Exception as e:
                logger.error(f"Listener for {event} failed: {e}")

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Connect and keep reconnecting until stopped or out of attempts."""
        self._running = True
        attempts = 0
        while self._running:
            try:
                async with self._connector(self.url) as ws:
                    self._ws = ws
                    attempts = 0
                    self.sessions += 1
                    logger.info(f"Connected to {self.url}")
                    await self._session(ws)
            except (OSError, WebSocketException) as e:
                logger.warning(f"Connection to {self.url} lost: {e}")
                self._emit(Event.ERROR, {"error": str(e)})
            finally:
                self._ws = None
                self.authenticated = False

            if not self._running:
                break
            self._emit(DISCONNECTED, {"url": self.url})

            if attempts >= self.reconnect_attempts:
                logger.error("Max reconnection attempts reached")
                self._emit(MAX_RECONNECT_ATTEMPTS_REACHED, {})
                break
            attempts += 1
            logger.info(f"Attempting to reconnect... ({attempts}/{self.reconnect_attempts})")
            await asyncio.sleep(self.reconnect_delay)
        self._running = False

    async def stop(self) -> None:
        self._running = False
        if self._ws is not None:
            await self._ws.close()

    async def _session(self, ws) -> None:
        if self.token:
            await self.send("authenticate", self.token)
        try:
            async for raw in ws:
                await self._handle(raw)
        finally:
            await self._stop_heartbeat()

    def _start_heartbeat(self) -> None:
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat())

    async def _stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await self.send("ping")

    async def _handle(self, raw: Any) -> None:
        try:
            message = decode_event(raw)
        except (ValueError, ValidationError) as e:
            logger.warning(f"Ignoring malformed frame: {e}")
            return
        event, data = message["event"], message.get("data")

        if event == Event.AUTHENTICATED:
            self.authenticated = bool(data and data.get("success"))
            if self.authenticated:
                self._start_heartbeat()
                await self._restore_subscriptions()
            else:
                await self._stop_heartbeat()
                logger.warning(f"Authentication rejected: {data}")
        elif event == Event.ERROR:
            logger.warning(f"Server error: {data}")

        self._emit(event, data)

    async def _restore_subscriptions(self) -> None:
        if not self._subscriptions:
            for process_type in ProcessType:
                self._subscriptions[("subscribeToProcess", process_type.value)] = process_type.value
            self._subscriptions[("subscribeToAlerts", ALL_ALERTS)] = ALL_ALERTS
        for (command, _), data in list(self._subscriptions.items()):
            await self.send(command, data)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def send(self, command: str, data: Any = None) -> bool:
        """Send a command; returns False while disconnected."""
        if self._ws is None:
            return False
        try:
            await self._ws.send(encode_command(command, data))
        except WebSocketException as e:
            logger.warning(f"Failed to send {command}: {e}")
            return False
        return True

    async def authenticate(self, token: str) -> bool:
        self.token = token
        return await self.send("authenticate", token)

    async def _subscribe(self, command: str, key: str, data: Any) -> bool:
        self._subscriptions[(command, key)] = data
        if not self.authenticated:
            return False
        return await self.send(command, data)

    async def subscribe_to_process(self, process_type: str) -> bool:
        return await self._subscribe("subscribeToProcess", process_type, process_type)

    async def unsubscribe_from_process(self, process_type: str) -> bool:
        self._subscriptions.pop(("subscribeToProcess", process_type), None)
        return await self.send("unsubscribeFromProcess", process_type)

    async def subscribe_to_equipment(self, equipment_id: str) -> bool:
        return await self._subscribe("subscribeToEquipment", equipment_id, equipment_id)

    async def subscribe_to_alerts(self, severity: Optional[str] = None) -> bool:
        severity = severity or ALL_ALERTS
        return await self._subscribe("subscribeToAlerts", severity, severity)

    async def acknowledge_alert(self, alert_id: str) -> bool:
        return await self.send("acknowledgeAlert", alert_id)

    async def send_process_control(
        self,
        process_type: str,
        action: str,
        stage: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None,
    ) -> bool:
        return await self.send(
            "processControl",
            {
                "processType": process_type,
                "stage": stage,
                "action": action,
                "parameters": parameters or {},
                "reason": reason,
            },
        )

    async def request_historical_data(
        self,
        request_id: str,
        hours: float = 24,
        process_type: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> bool:
        return await self.send(
            "requestHistoricalData",
            {"requestId": request_id, "hours": hours, "processType": process_type, "stage": stage},
        )

    async def ping(self) -> bool:
        return await self.send("ping")
