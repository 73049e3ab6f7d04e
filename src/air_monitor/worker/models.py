"""
Data Models for the Worker and its Event Channel.

Defines the broker settings, the session state, the metric samples and the
hierarchy of events that travel from the worker thread to the consumer.
"""
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol
import time

from air_monitor.worker.errors import ConfigError

DEFAULT_CLIENT_ID = "air-monitor"

# Where the broker password lives in the credential store
CREDENTIAL_SERVICE = "air-monitor"
CREDENTIAL_ACCOUNT = "mqtt"


class CredentialStore(Protocol):
    """
    Anything that can hand out the broker password.
    Implementations raise CredentialError when the backend is unusable.
    """
    def get_password(self, service: str, account: str) -> Optional[str]: ...

    def set_password(self, service: str, account: str, secret: str) -> None: ...

    def delete_password(self, service: str, account: str) -> None: ...


class MetricKind(str, Enum):
    PM1_0 = "pm1"
    PM2_5 = "pm25"
    PM10 = "pm10"
    TVOC = "tvoc"
    CO2 = "co2"
    TEMPERATURE = "temperature"
    HUMIDITY = "humidity"
    UNKNOWN = "unknown"


class ConnectionPhase(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


# --- Broker settings ---

@dataclass(frozen=True, kw_only=True)
class BrokerDescriptor:
    """
    Everything the Session needs to reach the broker.
    The password is deliberately not part of it, it comes from a CredentialStore.
    """
    host: str
    port: int = 1883
    tls: bool = False
    ca_path: Optional[Path] = None
    username: Optional[str] = None
    client_id: str = DEFAULT_CLIENT_ID
    keepalive_secs: int = 30
    topic_prefix: Optional[str] = None
    qos: int = 0

    def validate(self) -> "BrokerDescriptor":
        """Raises ConfigError for settings the broker would reject anyway."""
        if not self.host or not self.host.strip():
            raise ConfigError("MQTT host must be non-empty")
        if not 1 <= self.port <= 65535:
            raise ConfigError("MQTT port must be between 1 and 65535")
        if not 0 <= self.qos <= 2:
            raise ConfigError("MQTT QoS must be between 0 and 2")
        if self.keepalive_secs <= 0:
            raise ConfigError("MQTT keepalive must be greater than 0 seconds")
        return self


# --- Session state ---

@dataclass(frozen=True)
class ConnectionState:
    phase: ConnectionPhase = ConnectionPhase.DISCONNECTED
    attempt: int = 0
    delay: float = 0.0
    reason: Optional[str] = None

    @classmethod
    def disconnected(cls) -> "ConnectionState":
        return cls(ConnectionPhase.DISCONNECTED)

    @classmethod
    def connecting(cls) -> "ConnectionState":
        return cls(ConnectionPhase.CONNECTING)

    @classmethod
    def connected(cls) -> "ConnectionState":
        return cls(ConnectionPhase.CONNECTED)

    @classmethod
    def reconnecting(cls, attempt: int, delay: float) -> "ConnectionState":
        return cls(ConnectionPhase.RECONNECTING, attempt=attempt, delay=delay)

    @classmethod
    def failed(cls, reason: str) -> "ConnectionState":
        return cls(ConnectionPhase.FAILED, reason=reason)


@dataclass(frozen=True, kw_only=True)
class MetricSample:
    """One parsed sensor reading. Immutable once created."""
    kind: MetricKind
    value: float
    topic: str
    received_at: float = field(default_factory=time.time)


# --- Events (worker -> consumer) ---

@dataclass(frozen=True, kw_only=True)
class WorkerEvent:
    """Base class for everything the worker puts on the channel."""
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True, kw_only=True)
class ConnectedEvent(WorkerEvent):
    pass


@dataclass(frozen=True, kw_only=True)
class DisconnectedEvent(WorkerEvent):
    reason: str


@dataclass(frozen=True, kw_only=True)
class ReconnectingEvent(WorkerEvent):
    """Sent right before the worker waits `delay` seconds and retries."""
    attempt: int
    delay: float


@dataclass(frozen=True, kw_only=True)
class MetricEvent(WorkerEvent):
    sample: MetricSample


@dataclass(frozen=True, kw_only=True)
class ErrorEvent(WorkerEvent):
    description: str


@dataclass(frozen=True, kw_only=True)
class StatusEvent(WorkerEvent):
    """Informational line for the consumer's status bar."""
    message: str
