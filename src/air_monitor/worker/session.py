"""
The MQTT Session: one live broker connection.

This module is responsible for:
- Connecting to the broker with `aiomqtt` (credentials, TLS, keepalive).
- Subscribing below the configured topic prefix.
- Classifying every publish into a MetricSample.
- Reconnecting with exponential backoff when the transport drops.
- Reporting everything as WorkerEvents on the EventChannel.

A Session runs inside the supervisor's worker thread on its own event loop.
It is used once: after stop (or failure) a new Session is created.
"""
import asyncio
import logging
import math
import ssl
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

import aiomqtt

from air_monitor.worker.channel import EventChannel
from air_monitor.worker.errors import (
    ConnectError,
    CredentialError,
    InvalidTransitionError,
    PayloadParseError,
    TlsConfigError,
)
from air_monitor.worker.models import (
    CREDENTIAL_ACCOUNT,
    CREDENTIAL_SERVICE,
    BrokerDescriptor,
    ConnectedEvent,
    ConnectionPhase,
    ConnectionState,
    CredentialStore,
    DisconnectedEvent,
    ErrorEvent,
    MetricEvent,
    MetricSample,
    ReconnectingEvent,
    StatusEvent,
    WorkerEvent,
)
from air_monitor.worker.tls import build_tls_context
from air_monitor.worker.topics import classify, subscription_topic

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS = {
    ConnectionPhase.DISCONNECTED: {ConnectionPhase.CONNECTING},
    ConnectionPhase.CONNECTING: {
        ConnectionPhase.CONNECTED,
        ConnectionPhase.RECONNECTING,
        ConnectionPhase.FAILED,
        ConnectionPhase.DISCONNECTED,
    },
    ConnectionPhase.CONNECTED: {ConnectionPhase.RECONNECTING, ConnectionPhase.DISCONNECTED},
    ConnectionPhase.RECONNECTING: {ConnectionPhase.CONNECTING, ConnectionPhase.DISCONNECTED},
    ConnectionPhase.FAILED: set(),
}

_STOPPED = object()


@dataclass(frozen=True)
class ReconnectPolicy:
    """Delay before retry n is initial * factor**(n-1), capped at maximum."""
    initial: float = 1.0
    maximum: float = 30.0
    factor: float = 2.0

    def delay(self, attempt: int) -> float:
        return min(self.initial * self.factor ** max(attempt - 1, 0), self.maximum)


def parse_payload(payload: Union[bytes, bytearray, str, int, float, None]) -> float:
    """Plain numeric text, surrounding whitespace ignored. Anything else raises PayloadParseError."""
    if isinstance(payload, (bytes, bytearray)):
        try:
            text = bytes(payload).decode("utf-8")
        except UnicodeDecodeError as e:
            raise PayloadParseError("payload is not valid UTF-8") from e
    elif payload is None:
        text = ""
    else:
        text = str(payload)

    text = text.strip()
    try:
        value = float(text)
    except ValueError:
        raise PayloadParseError(f"non-numeric payload {text[:40]!r}") from None
    if not math.isfinite(value):
        raise PayloadParseError(f"non-finite payload {text!r}")
    return value


class Session:
    descriptor: BrokerDescriptor
    events: EventChannel
    credential_store: Optional[CredentialStore]
    policy: ReconnectPolicy
    _client_factory: Callable[..., Any] # aiomqtt.Client, or a fake in tests
    _state: ConnectionState
    _attempt: int # consecutive failed connects since the last success
    _stop: asyncio.Event
    _stopping: bool

    def __init__(self, descriptor: BrokerDescriptor, events: EventChannel,
                 credential_store: Optional[CredentialStore] = None,
                 policy: Optional[ReconnectPolicy] = None,
                 client_factory: Callable[..., Any] = aiomqtt.Client):
        self.descriptor = descriptor
        self.events = events
        self.credential_store = credential_store
        self.policy = policy or ReconnectPolicy()
        self._client_factory = client_factory
        self._state = ConnectionState.disconnected()
        self._attempt = 0
        self._stop = asyncio.Event()
        self._stopping = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    def request_stop(self):
        """
        Asks the run loop to terminate. Must be called on the session's event loop,
        from another thread use loop.call_soon_threadsafe(session.request_stop).
        """
        logger.debug("Stop requested.")
        self._stopping = True
        self._stop.set()

    async def run(self):
        """
        The persistent connection loop.
        Returns after a stop request, or after a TLS/credential failure.
        """
        d = self.descriptor
        logger.info(f"Session starting for {d.host}:{d.port} as {d.client_id} (tls={d.tls}).")
        try:
            while not self._stop.is_set():
                self._transition(ConnectionState.connecting())
                try:
                    tls_context = self._tls_context()
                    # keyring backends may block on an unlock prompt
                    password = await self._until_stopped(asyncio.to_thread(self._fetch_password))
                except (CredentialError, TlsConfigError) as e:
                    self._fail(str(e))
                    return
                if password is _STOPPED:
                    break

                try:
                    outcome = await self._until_stopped(self._connect_and_listen(password, tls_context))
                except ConnectError as e:
                    reason = str(e)
                else:
                    if outcome is _STOPPED:
                        break
                    reason = outcome
                finally:
                    password = None

                if self._stop.is_set():
                    break
                self._on_connection_ended(reason)

                delay = self.policy.delay(self._attempt)
                self._transition(ConnectionState.reconnecting(self._attempt, delay))
                self._emit(ReconnectingEvent(attempt=self._attempt, delay=delay))
                logger.info(f"Reconnecting in {delay:.1f}s (attempt {self._attempt}).")
                if await self._sleep_or_stop(delay):
                    break
        finally:
            if self._state.phase is not ConnectionPhase.FAILED:
                if self._state.phase is not ConnectionPhase.DISCONNECTED:
                    self._transition(ConnectionState.disconnected())
            logger.info(f"Session terminated in state '{self._state.phase.value}'.")

    def _on_connection_ended(self, reason: str):
        if self._state.phase is ConnectionPhase.CONNECTED:
            logger.warning(f"MQTT connection lost: {reason}")
            self._emit(DisconnectedEvent(reason=reason))
        elif self._attempt == 0:
            logger.error(f"MQTT connect failed: {reason}")
            self._emit(ErrorEvent(description=f"connect failed: {reason}"))
        else:
            logger.warning(f"Reconnect attempt {self._attempt} failed: {reason}")
        self._attempt += 1

    async def _connect_and_listen(self, password: Optional[str], tls_context: Optional[ssl.SSLContext]) -> str:
        """
        The connection is ONLY valid inside the `async with` block.
        Returns a reason when the broker closes the stream, raises ConnectError on failure.
        """
        d = self.descriptor
        topic = subscription_topic(d.topic_prefix)
        try:
            async with self._client_factory(
                hostname=d.host,
                port=d.port,
                identifier=d.client_id,
                username=d.username,
                password=password,
                keepalive=d.keepalive_secs,
                tls_context=tls_context,
                clean_session=False,
            ) as client:
                self._transition(ConnectionState.connected())
                self._attempt = 0
                await client.subscribe(topic, qos=d.qos)
                logger.info(f"Connected to {d.host}:{d.port}, subscribed to '{topic}'.")
                self._emit(StatusEvent(message=f"subscribed to {topic}"))
                self._emit(ConnectedEvent())

                async for message in client.messages:
                    self._handle_message(message)
        except aiomqtt.MqttError as e:
            raise ConnectError(str(e) or e.__class__.__name__) from e
        except OSError as e:
            raise ConnectError(str(e) or e.__class__.__name__) from e
        return "connection closed"

    def _handle_message(self, message):
        topic = str(message.topic)
        kind = classify(topic)
        try:
            value = parse_payload(message.payload)
        except PayloadParseError as e:
            logger.debug(f"Ignoring publish on '{topic}': {e}")
            self._emit(ErrorEvent(description=f"{topic}: {e}"))
            return

        sample = MetricSample(kind=kind, value=value, topic=topic)
        logger.debug(f"Metric {kind.value}={value} from '{topic}'")
        self._emit(MetricEvent(sample=sample))

    async def _until_stopped(self, coro):
        """
        Races `coro` against the stop signal.
        Returns the coroutine's result, or _STOPPED if the stop signal won.
        """
        work = asyncio.ensure_future(coro)
        stop_waiter = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({work, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_waiter.cancel()
            if not work.done():
                work.cancel()
                try:
                    # leaving the client context closes the transport
                    await work
                except asyncio.CancelledError:
                    pass
                except ConnectError as e:
                    logger.debug(f"Connection closed with an error during stop: {e}")

        if work.cancelled():
            return _STOPPED
        return work.result()

    async def _sleep_or_stop(self, delay: float) -> bool:
        """Waits for the backoff delay. True if a stop arrived first."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    def _fetch_password(self) -> Optional[str]:
        if not self.descriptor.username or self.credential_store is None:
            return None
        return self.credential_store.get_password(CREDENTIAL_SERVICE, CREDENTIAL_ACCOUNT)

    def _tls_context(self) -> Optional[ssl.SSLContext]:
        if not self.descriptor.tls:
            return None
        return build_tls_context(self.descriptor.ca_path)

    def _fail(self, reason: str):
        logger.error(f"Session setup failed: {reason}")
        self._transition(ConnectionState.failed(reason))
        self._emit(ErrorEvent(description=reason))
        self._emit(DisconnectedEvent(reason=reason))

    def _transition(self, new_state: ConnectionState):
        current = self._state.phase
        if new_state.phase not in _ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(f"{current.value} -> {new_state.phase.value}")
        logger.debug(f"State {current.value} -> {new_state.phase.value}")
        self._state = new_state

    def _emit(self, event: WorkerEvent):
        # once stop is requested nothing more reaches the consumer
        if self._stopping:
            return
        self.events.publish(event)
