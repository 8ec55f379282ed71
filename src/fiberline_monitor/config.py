"""Configuration management for the monitoring server."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv


@dataclass
class ServerConfig:
    """Network endpoints for the push channel and the REST surface."""

    host: str = "0.0.0.0"
    ws_port: int = 5000
    api_port: int = 5001
    outbound_queue_size: int = 256


@dataclass
class SimulationConfig:
    """Synthesizer parameters."""

    tick_interval_ms: int = 5000
    process_variation: float = 0.1
    equipment_count: int = 20
    alert_probability: float = 0.1
    status_flip_probability: float = 0.02
    efficiency_walk: float = 2.5
    report_interval_ms: int = 6 * 60 * 60 * 1000
    random_seed: Optional[int] = None


@dataclass
class HistoryConfig:
    process_capacity: int = 1000
    alert_capacity: int = 100
    kpi_window: int = 20


@dataclass
class SessionConfig:
    """Session token and client connection settings."""

    jwt_secret: str = "fiberline-monitoring-secret"
    token_ttl_hours: int = 24
    heartbeat_interval_ms: int = 30000
    reconnect_delay_ms: int = 5000
    reconnect_attempts: int = 5


@dataclass
class MQTTConfig:
    """Optional MQTT telemetry mirror."""

    enabled: bool = False
    broker: str = "localhost"
    port: int = 1883
    username: str = ""
    password: str = ""
    client_id: str = "fiberline-monitor"
    qos: int = 0
    topic_prefix: str = "fiberline/v1"
    site: str = "plant_01"


@dataclass
class Config:
    """Main configuration container."""

    server: ServerConfig = field(default_factory=ServerConfig)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    mqtt: MQTTConfig = field(default_factory=MQTTConfig)

    @classmethod
    def default(cls) -> "Config":
        return cls()

    @classmethod
    def from_yaml(cls, config_path: Path) -> "Config":
        """Load configuration from YAML file."""
        if not config_path.exists():
            return cls.default()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls._from_dict(data)

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None, base: Optional["Config"] = None) -> "Config":
        """Load configuration from environment variables (and a .env file)."""
        load_dotenv(env_file)
        config = base or cls.default()

        sim = config.simulation
        sim.tick_interval_ms = int(os.getenv("SIMULATION_INTERVAL", sim.tick_interval_ms))
        sim.process_variation = float(os.getenv("PROCESS_VARIATION", sim.process_variation))
        sim.equipment_count = int(os.getenv("EQUIPMENT_COUNT", sim.equipment_count))
        sim.report_interval_ms = int(os.getenv("REPORT_INTERVAL", sim.report_interval_ms))
        seed = os.getenv("RANDOM_SEED")
        if seed:
            sim.random_seed = int(seed)

        hist = config.history
        hist.process_capacity = int(os.getenv("PROCESS_HISTORY_CAPACITY", hist.process_capacity))
        hist.alert_capacity = int(os.getenv("ALERT_HISTORY_CAPACITY", hist.alert_capacity))

        session = config.session
        session.jwt_secret = os.getenv("JWT_SECRET", session.jwt_secret)
        session.heartbeat_interval_ms = int(
            os.getenv("HEARTBEAT_INTERVAL", session.heartbeat_interval_ms)
        )
        session.reconnect_delay_ms = int(os.getenv("RECONNECT_DELAY", session.reconnect_delay_ms))
        session.reconnect_attempts = int(
            os.getenv("RECONNECT_ATTEMPTS", session.reconnect_attempts)
        )

        server = config.server
        server.host = os.getenv("HOST", server.host)
        server.ws_port = int(os.getenv("PORT", server.ws_port))
        server.api_port = int(os.getenv("API_PORT", server.api_port))
        server.outbound_queue_size = int(
            os.getenv("OUTBOUND_QUEUE_SIZE", server.outbound_queue_size)
        )

        mqtt = config.mqtt
        mqtt.enabled = os.getenv("MQTT_ENABLED", str(mqtt.enabled)).lower() == "true"
        mqtt.broker = os.getenv("MQTT_BROKER", mqtt.broker)
        mqtt.port = int(os.getenv("MQTT_PORT", mqtt.port))
        mqtt.username = os.getenv("MQTT_USERNAME", mqtt.username)
        mqtt.password = os.getenv("MQTT_PASSWORD", mqtt.password)

        return config

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create config from dictionary, falling back to defaults per key."""
        config = cls.default()
        sections = {
            "server": ServerConfig,
            "simulation": SimulationConfig,
            "history": HistoryConfig,
            "session": SessionConfig,
            "mqtt": MQTTConfig,
        }
        for name, section_cls in sections.items():
            if name not in data:
                continue
            current = getattr(config, name)
            merged = {
                key: data[name].get(key, getattr(current, key))
                for key in current.__dataclass_fields__
            }
            setattr(config, name, section_cls(**merged))
        return config

    def to_dict(self) -> Dict[str, Any]:
        return {
            name: dict(vars(getattr(self, name)))
            for name in ("server", "simulation", "history", "session", "mqtt")
        }

    def to_yaml(self, path: Path) -> None:
        """Save configuration to YAML file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
