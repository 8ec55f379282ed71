"""Monitoring server: push channel, REST API and tick loop on one event loop."""

import asyncio
import logging
import signal
from typing import Optional

from aiohttp import web
from websockets.asyncio.server import Server, serve

from .api import create_app
from .auth import TokenIssuer
from .config import Config
from .connection import ConnectionManager
from .mqtt_client import TelemetryMirror
from .simulator import Simulator

logger = logging.getLogger(__name__)


class MonitorServer:
    """Owns the simulator and every network endpoint in front of it."""

    def __init__(self, config: Config, dry_run_mqtt: bool = False):
        self.config = config
        self.dry_run_mqtt = dry_run_mqtt

        self.mirror: Optional[TelemetryMirror] = None
        if config.mqtt.enabled:
            self.mirror = TelemetryMirror(config.mqtt)

        self.simulator = Simulator(config, mirror=self.mirror)
        self.issuer = TokenIssuer(config.session.jwt_secret, config.session.token_ttl_hours)
        self.manager = ConnectionManager(
            self.simulator, self.issuer, queue_size=config.server.outbound_queue_size
        )

        self._ws_server: Optional[Server] = None
        self._api_runner: Optional[web.AppRunner] = None
        self._stopped: Optional[asyncio.Event] = None

    async def start(self) -> None:
        server = self.config.server
        self._stopped = asyncio.Event()

        if self.mirror is not None and not self.mirror.connect(dry_run=self.dry_run_mqtt):
            logger.warning("MQTT mirror unavailable - continuing without it")
            self.simulator.mirror = None

        self._ws_server = await serve(self.manager.serve, server.host, server.ws_port)
        logger.info(f"WebSocket server started on ws://{server.host}:{server.ws_port}")

        self._api_runner = web.AppRunner(create_app(self.simulator, self.issuer))
        await self._api_runner.setup()
        site = web.TCPSite(self._api_runner, server.host, server.api_port)
        await site.start()
        logger.info(f"REST API server started on http://{server.host}:{server.api_port}")

        self.simulator.start()
        logger.info("Monitoring server ready for connections")

    async def shutdown(self) -> None:
        """Stop ticking, flush and close every connection, then the endpoints."""
        logger.info("Shutting down monitoring server...")
        await self.simulator.stop()

        for connection in self.manager.registry.connections():
            await connection.flush()
            await self.manager.disconnect(connection, "(server shutdown)")

        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None

        if self._api_runner is not None:
            await self._api_runner.cleanup()
            self._api_runner = None

        if self.mirror is not None:
            self.mirror.disconnect()

        logger.info("Monitoring server shutdown complete")
        if self._stopped is not None:
            self._stopped.set()

    async def run(self) -> None:
        """Run until SIGINT/SIGTERM."""
        await self.start()

        loop = asyncio.get_running_loop()

        def signal_handler():
            asyncio.create_task(self.shutdown())

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)

        await self._stopped.wait()


def run_server(config: Config, dry_run_mqtt: bool = False) -> None:
    asyncio.run(MonitorServer(config, dry_run_mqtt=dry_run_mqtt).run())
