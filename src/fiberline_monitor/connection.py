"""Per-connection session state and command handling.

Each WebSocket connection moves through::

    Connected -> Authenticating -> Authenticated -> Disconnected

A failed authentication returns the connection to ``Connected`` so the client
may retry. ``Disconnected`` is terminal; the connection's topic memberships
are released and nothing about it is remembered, so a reconnecting client
starts again with zero subscriptions.

Outbound traffic goes through a bounded per-connection queue drained by its
own writer task. When the queue is full the oldest frame is dropped, so a
slow client only ever loses its own data.
"""

import asyncio
import logging
import uuid
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Type

from websockets.exceptions import ConnectionClosed

from .auth import Action, Identity, TokenIssuer
from .broadcaster import TopicRegistry
from .errors import AuthenticationError, MonitorError, ValidationError
from .models import Topic, format_instant, utcnow
from .protocol import (
    AcknowledgeAlert,
    Authenticate,
    Command,
    Event,
    Ping,
    ProcessControl,
    QualityInspectionResult,
    RequestHistoricalData,
    ScheduleMaintenanceRequest,
    SubscribeToAlerts,
    SubscribeToEquipment,
    SubscribeToProcess,
    UnsubscribeFromProcess,
    UpdateUserStatus,
    encode_event,
    parse_command,
)

if TYPE_CHECKING:
    from .simulator import Simulator

logger = logging.getLogger(__name__)

SERVER_VERSION = "1.0.0"


class ConnectionState(Enum):
    CONNECTED = "connected"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    DISCONNECTED = "disconnected"


class Connection:
    """One client connection with its own bounded outbound queue."""

    def __init__(
        self,
        transport: Any,
        queue_size: int = 256,
        connection_id: Optional[str] = None,
        on_writer_failed: Optional[Callable[["Connection"], Awaitable[None]]] = None,
    ):
        self.id = connection_id or str(getattr(transport, "id", None) or uuid.uuid4())
        self.transport = transport
        self.state = ConnectionState.CONNECTED
        self.identity: Optional[Identity] = None
        self._queue: "asyncio.Queue[str]" = asyncio.Queue(maxsize=queue_size)
        self._writer: Optional[asyncio.Task] = None
        self._on_writer_failed = on_writer_failed
        self._failure_task: Optional[asyncio.Task] = None
        self.frames_sent = 0
        self.frames_dropped = 0

    def __repr__(self) -> str:
        return f"Connection({self.id}, {self.state.value})"

    @property
    def is_authenticated(self) -> bool:
        return self.state == ConnectionState.AUTHENTICATED

    @property
    def is_open(self) -> bool:
        return self.state != ConnectionState.DISCONNECTED

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def enqueue(self, frame: str) -> bool:
        """Queue a frame without blocking; drops the oldest frame when full."""
        if not self.is_open:
            return False
        if self._queue.full():
            try:
                self._queue.get_nowait()
                self.frames_dropped += 1
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(frame)
        return True

    def send(self, event: str, data: Any = None) -> bool:
        return self.enqueue(encode_event(event, data))

    def start_writer(self) -> asyncio.Task:
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain())
        return self._writer

    async def _drain(self) -> None:
        while True:
            frame = await self._queue.get()
            try:
                await self.transport.send(frame)
                self.frames_sent += 1
            except ConnectionClosed:
                logger.debug(f"Writer for {self.id} stopped: transport closed")
                return
            except Exception as e:
                logger.error(f"Writer for {self.id} failed: {e}")
                if self._on_writer_failed is not None:
                    self._failure_task = asyncio.create_task(self._on_writer_failed(self))
                return

    async def flush(self, timeout: float = 1.0) -> None:
        """Wait (bounded) until the outbound queue is empty."""
        deadline = asyncio.get_running_loop().time() + timeout
        while not self._queue.empty() and asyncio.get_running_loop().time() < deadline:
            await asyncio.sleep(0.01)

    async def close(self) -> None:
        self.state = ConnectionState.DISCONNECTED
        if self._writer is not None:
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
            self._writer = None


Handler = Callable[[Connection, Any], None]


class ConnectionManager:
    """Accepts connections and applies client commands to the simulator."""

    def __init__(
        self,
        simulator: "Simulator",
        issuer: TokenIssuer,
        queue_size: int = 256,
    ):
        self.simulator = simulator
        self.issuer = issuer
        self.queue_size = queue_size
        self.registry: TopicRegistry = simulator.registry
        self.broadcaster = simulator.broadcaster
        self._handlers: Dict[Type[Command], Handler] = {
            Authenticate: self._on_authenticate,
            Ping: self._on_ping,
            SubscribeToProcess: self._on_subscribe_process,
            UnsubscribeFromProcess: self._on_unsubscribe_process,
            SubscribeToEquipment: self._on_subscribe_equipment,
            SubscribeToAlerts: self._on_subscribe_alerts,
            AcknowledgeAlert: self._on_acknowledge_alert,
            ProcessControl: self._on_process_control,
            ScheduleMaintenanceRequest: self._on_maintenance_request,
            QualityInspectionResult: self._on_quality_inspection,
            RequestHistoricalData: self._on_historical_data,
            UpdateUserStatus: self._on_user_status,
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def open(self, transport: Any) -> Connection:
        connection = Connection(
            transport, queue_size=self.queue_size, on_writer_failed=self._writer_failed
        )
        self.registry.register(connection)
        connection.send(
            Event.CONNECTED,
            {
                "connectionId": connection.id,
                "message": "Connected to fiberline monitoring server",
                "serverVersion": SERVER_VERSION,
                "timestamp": format_instant(utcnow()),
            },
        )
        logger.info(f"Client connected: {connection.id}")
        return connection

    async def disconnect(self, connection: Connection, reason: str = "") -> None:
        """Transition to Disconnected and release every topic membership."""
        if not connection.is_open:
            return
        identity = connection.identity
        await connection.close()
        self.registry.unregister(connection)
        logger.info(f"Client {connection.id} disconnected {reason}".rstrip())
        if identity is not None:
            self.broadcaster.to_topic(
                Topic.role("production_manager"),
                Event.USER_DISCONNECTED,
                {"userId": identity.user_id, "lastSeen": format_instant(utcnow())},
            )

    async def _writer_failed(self, connection: Connection) -> None:
        """A dead writer means nothing reaches the client any more; drop it."""
        await self.disconnect(connection, "(send failed)")
        try:
            await connection.transport.close()
        except Exception as e:
            logger.debug(f"Closing transport for {connection.id} failed: {e}")

    async def serve(self, transport: Any) -> None:
        """Run one connection until its transport closes."""
        connection = self.open(transport)
        connection.start_writer()
        reason = ""
        try:
            async for raw in transport:
                self.handle_frame(connection, raw)
        except ConnectionClosed as e:
            reason = f"({e})"
        finally:
            await self.disconnect(connection, reason)

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def handle_frame(self, connection: Connection, raw: Any) -> None:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            command = parse_command(raw)
        except ValidationError as e:
            logger.debug(f"Rejected frame from {connection.id}: {e.message}")
            connection.send(Event.ERROR, e.to_dict())
            return
        self.dispatch(connection, command)

    def dispatch(self, connection: Connection, command: Command) -> None:
        if not connection.is_open:
            return
        try:
            if command.requires_auth and not connection.is_authenticated:
                raise AuthenticationError("Not authenticated")
            self._handlers[type(command)](connection, command)
        except MonitorError as e:
            logger.info(f"{command.name} from {connection.id} rejected: {e.message}")
            connection.send(Event.ERROR, e.to_dict())
        except Exception as e:
            logger.error(f"{command.name} from {connection.id} failed: {e}", exc_info=True)
            connection.send(Event.ERROR, MonitorError("Internal server error").to_dict())

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _on_authenticate(self, connection: Connection, command: Authenticate) -> None:
        previous_state = connection.state
        connection.state = ConnectionState.AUTHENTICATING
        try:
            identity = self.issuer.verify(command.token)
        except AuthenticationError as e:
            connection.state = previous_state
            connection.send(
                Event.AUTHENTICATED, {"success": False, "message": "Authentication failed"}
            )
            logger.warning(f"Authentication failed for client {connection.id}: {e.message}")
            return

        if connection.identity is not None and connection.identity.role != identity.role:
            self.registry.unsubscribe(connection, Topic.role(connection.identity.role.value))
        connection.identity = identity
        connection.state = ConnectionState.AUTHENTICATED
        self.registry.subscribe(connection, Topic.role(identity.role.value))
        connection.send(
            Event.AUTHENTICATED,
            {
                "success": True,
                "message": "Successfully authenticated",
                "userId": identity.user_id,
                "role": identity.role.value,
            },
        )
        logger.info(f"Client {connection.id} authenticated as {identity.role.value}")

    def _on_ping(self, connection: Connection, command: Ping) -> None:
        connection.send(Event.PONG, {"timestamp": format_instant(utcnow())})

    def _on_subscribe_process(self, connection: Connection, command: SubscribeToProcess) -> None:
        self.registry.subscribe(connection, Topic.process(command.process_type))
        logger.info(f"Client {connection.id} subscribed to process: {command.process_type.value}")
        connection.send(
            Event.SUBSCRIPTION_CONFIRMED, {"processType": command.process_type.value}
        )

    def _on_unsubscribe_process(
        self, connection: Connection, command: UnsubscribeFromProcess
    ) -> None:
        if self.registry.unsubscribe(connection, Topic.process(command.process_type)):
            logger.info(
                f"Client {connection.id} unsubscribed from process: {command.process_type.value}"
            )

    def _on_subscribe_equipment(
        self, connection: Connection, command: SubscribeToEquipment
    ) -> None:
        self.simulator.store.equipment.find(command.equipment_id)
        self.registry.subscribe(connection, Topic.equipment(command.equipment_id))
        logger.info(f"Client {connection.id} subscribed to equipment: {command.equipment_id}")
        connection.send(Event.SUBSCRIPTION_CONFIRMED, {"equipmentId": command.equipment_id})

    def _on_subscribe_alerts(self, connection: Connection, command: SubscribeToAlerts) -> None:
        topic = Topic.alerts(command.severity)
        self.registry.subscribe(connection, topic)
        logger.info(f"Client {connection.id} subscribed to alerts: {topic}")
        connection.send(Event.SUBSCRIPTION_CONFIRMED, {"alerts": topic.key})

    def _on_acknowledge_alert(self, connection: Connection, command: AcknowledgeAlert) -> None:
        self.simulator.acknowledge_alert(command.alert_id, connection.identity.user_id)

    def _on_process_control(self, connection: Connection, command: ProcessControl) -> None:
        identity = connection.identity
        identity.require(Action.PROCESS_CONTROL)
        logger.info(f"Process control command from {connection.id}: {command.to_dict()}")
        timestamp = format_instant(utcnow())
        connection.send(
            Event.PROCESS_CONTROL_RESULT,
            {"command": command.to_dict(), "status": "executed", "timestamp": timestamp},
        )
        self.broadcaster.to_topic(
            Topic.process(command.process_type),
            Event.PROCESS_CONTROL_UPDATE,
            {"command": command.to_dict(), "executedBy": identity.user_id, "timestamp": timestamp},
        )

    def _on_maintenance_request(
        self, connection: Connection, command: ScheduleMaintenanceRequest
    ) -> None:
        request = self.simulator.request_maintenance(
            equipment_id=command.equipment_id,
            scheduled_date=command.scheduled_date,
            maintenance_type=command.maintenance_type,
            priority=command.priority,
            notes=command.notes,
            requested_by=connection.identity.user_id,
        )
        connection.send(
            Event.MAINTENANCE_REQUEST_CONFIRMED,
            {
                "requestId": request["requestId"],
                "message": "Maintenance request submitted successfully",
            },
        )

    def _on_quality_inspection(
        self, connection: Connection, command: QualityInspectionResult
    ) -> None:
        identity = connection.identity
        identity.require(Action.QUALITY_SUBMISSION)
        logger.info(f"Quality inspection result from {connection.id}: batch {command.batch_id}")
        self.broadcaster.to_topic(
            Topic.role("quality_manager"),
            Event.QUALITY_DATA_RECEIVED,
            {
                **command.to_dict(),
                "inspector": identity.user_id,
                "timestamp": format_instant(utcnow()),
            },
        )

    def _on_historical_data(self, connection: Connection, command: RequestHistoricalData) -> None:
        records = self.simulator.store.read_process_history(
            command.hours, process_type=command.process_type, stage=command.stage
        )
        connection.send(
            Event.HISTORICAL_DATA,
            {
                "requestId": command.request_id,
                "data": [record.to_dict() for record in records],
                "count": len(records),
            },
        )

    def _on_user_status(self, connection: Connection, command: UpdateUserStatus) -> None:
        self.broadcaster.to_topic(
            Topic.role("production_manager"),
            Event.USER_STATUS_UPDATE,
            {
                "userId": connection.identity.user_id,
                "status": command.status,
                "timestamp": format_instant(utcnow()),
            },
        )
