"""Topic registry and per-tick fan-out.

The registry maps each ``Topic`` to the set of connections subscribed to it.
It is the only state shared between connections, so membership changes and
reads go through a lock and iteration always works on a snapshot: a
subscriber added mid-broadcast may miss that tick but gets the next one.

The broadcaster never awaits a socket. It encodes each event once and hands
the frame to every target connection's outbound queue; each connection
drains its own queue independently.
"""

import logging
import threading
from collections import defaultdict
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence, Set

from .models import (
    AcknowledgmentNotice,
    Alert,
    Equipment,
    KPISnapshot,
    ProcessRecord,
    Topic,
    TopicKind,
)
from .protocol import Event, encode_event

if TYPE_CHECKING:
    from .connection import Connection

logger = logging.getLogger(__name__)


class TopicRegistry:
    """Many-to-many mapping between connections and topics."""

    def __init__(self):
        self._lock = threading.Lock()
        self._connections: Dict[str, "Connection"] = {}
        self._members: Dict[Topic, Set["Connection"]] = defaultdict(set)
        self._topics: Dict[str, Set[Topic]] = defaultdict(set)

    def register(self, connection: "Connection") -> None:
        with self._lock:
            self._connections[connection.id] = connection

    def unregister(self, connection: "Connection") -> Set[Topic]:
        """Drop the connection and every topic membership it held."""
        with self._lock:
            self._connections.pop(connection.id, None)
            topics = self._topics.pop(connection.id, set())
            for topic in topics:
                members = self._members.get(topic)
                if members is None:
                    continue
                members.discard(connection)
                if not members:
                    del self._members[topic]
        return topics

    def subscribe(self, connection: "Connection", topic: Topic) -> bool:
        """Idempotent; returns True only when the membership is new."""
        with self._lock:
            if connection.id not in self._connections:
                return False
            if topic in self._topics[connection.id]:
                return False
            self._topics[connection.id].add(topic)
            self._members[topic].add(connection)
            return True

    def unsubscribe(self, connection: "Connection", topic: Topic) -> bool:
        """No-op for topics the connection does not hold."""
        with self._lock:
            held = self._topics.get(connection.id)
            if not held or topic not in held:
                return False
            held.discard(topic)
            members = self._members.get(topic)
            if members is not None:
                members.discard(connection)
                if not members:
                    del self._members[topic]
            return True

    def subscribers(self, topic: Topic) -> List["Connection"]:
        with self._lock:
            return list(self._members.get(topic, ()))

    def topics_of(self, connection: "Connection") -> Set[Topic]:
        with self._lock:
            return set(self._topics.get(connection.id, ()))

    def connections(self) -> List["Connection"]:
        with self._lock:
            return list(self._connections.values())

    def authenticated(self) -> List["Connection"]:
        return [connection for connection in self.connections() if connection.is_authenticated]

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)


class Broadcaster:
    """Routes tick output and global notices to the right connections."""

    def __init__(self, registry: TopicRegistry):
        self.registry = registry
        self._frames_enqueued = 0

    @property
    def frames_enqueued(self) -> int:
        return self._frames_enqueued

    def _deliver(self, connections: Iterable["Connection"], frame: str) -> int:
        delivered = 0
        for connection in connections:
            if connection.enqueue(frame):
                delivered += 1
        self._frames_enqueued += delivered
        return delivered

    # -------------------------------------------------------------------------
    # Generic routing
    # -------------------------------------------------------------------------

    def to_topic(
        self,
        topic: Topic,
        event: str,
        data=None,
        exclude: Optional["Connection"] = None,
    ) -> int:
        targets = [c for c in self.registry.subscribers(topic) if c is not exclude]
        if not targets:
            return 0
        return self._deliver(targets, encode_event(event, data))

    def to_authenticated(self, event: str, data=None) -> int:
        return self._deliver(self.registry.authenticated(), encode_event(event, data))

    def to_all(self, event: str, data=None) -> int:
        return self._deliver(self.registry.connections(), encode_event(event, data))

    # -------------------------------------------------------------------------
    # Tick output
    # -------------------------------------------------------------------------

    def publish_process_batch(self, batch: Sequence[ProcessRecord]) -> int:
        """Send each subscriber only the records of the types it follows.

        A connection following several types gets one ``processData`` event
        holding just those types' records, in batch order. A connection never
        receives an event without at least one record of a followed type.
        """
        per_connection: Dict[str, List[ProcessRecord]] = defaultdict(list)
        targets: Dict[str, "Connection"] = {}
        for record in batch:
            for connection in self.registry.subscribers(
                Topic(TopicKind.PROCESS_TYPE, record.process_type.value)
            ):
                targets[connection.id] = connection
                per_connection[connection.id].append(record)

        delivered = 0
        for connection_id, records in per_connection.items():
            frame = encode_event(Event.PROCESS_DATA, [record.to_dict() for record in records])
            delivered += self._deliver([targets[connection_id]], frame)
        return delivered

    def publish_equipment(self, roster: Sequence[Equipment]) -> int:
        return self.to_authenticated(Event.EQUIPMENT_STATUS, [unit.to_dict() for unit in roster])

    def publish_alert(self, alert: Alert) -> int:
        targets: Dict[str, "Connection"] = {}
        for topic in (Topic.alerts(alert.severity), Topic.alerts()):
            for connection in self.registry.subscribers(topic):
                targets[connection.id] = connection
        if not targets:
            return 0
        return self._deliver(targets.values(), encode_event(Event.NEW_ALERT, alert.to_dict()))

    def publish_kpis(self, kpis: KPISnapshot) -> int:
        return self.to_authenticated(Event.KPI_UPDATE, kpis.to_dict())

    def publish_acknowledgment(self, notice: AcknowledgmentNotice) -> int:
        """Acknowledgment is globally visible: every connection hears it."""
        return self.to_all(Event.ALERT_ACKNOWLEDGED, notice.to_dict())

    def publish_tick(
        self,
        batch: Sequence[ProcessRecord],
        roster: Sequence[Equipment],
        alert: Optional[Alert],
        kpis: KPISnapshot,
    ) -> Dict[str, int]:
        stats = {
            "processData": self.publish_process_batch(batch),
            "equipmentStatus": self.publish_equipment(roster),
            "newAlert": self.publish_alert(alert) if alert else 0,
            "kpiUpdate": self.publish_kpis(kpis),
        }
        logger.debug(f"Tick fan-out: {stats}")
        return stats
