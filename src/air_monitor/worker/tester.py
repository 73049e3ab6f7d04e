"""
One-shot broker connection check.

Connects with the same client/TLS path as the Session, subscribes to the
status topic, waits for the SUBACK and always disconnects again. Runs on a
private event loop so it can be called from any plain thread, and it never
shares anything with a running Session.
"""
import asyncio
import logging
import time
from typing import Any, Callable, Optional

import aiomqtt

from air_monitor.worker.errors import ConnectError, TlsConfigError
from air_monitor.worker.models import BrokerDescriptor
from air_monitor.worker.tls import build_tls_context
from air_monitor.worker.topics import status_topic

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0

# a running Session keeps its own client id
TEST_CLIENT_SUFFIX = "-test"

# SUBACK reason codes from 0x80 upwards mean the subscription was refused
_SUBACK_FAILURE = 0x80


class ConnectionTester:
    timeout: float
    _client_factory: Callable[..., Any]

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, client_factory: Callable[..., Any] = aiomqtt.Client):
        self.timeout = timeout
        self._client_factory = client_factory

    def test(self, descriptor: BrokerDescriptor, password: Optional[str] = None) -> None:
        """
        Returns None when the broker accepted the connection and the subscription.
        Raises ConnectError otherwise, at the latest shortly after `timeout`.
        """
        started = time.monotonic()
        loop = asyncio.new_event_loop()
        try:
            loop.run_until_complete(self._probe_with_deadline(descriptor, password))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            # no shutdown_default_executor(): a connect stuck in the executor must not hold up the caller
            loop.close()
            logger.debug(f"Connection test finished after {time.monotonic() - started:.2f}s.")
        logger.info(f"Connection test to {descriptor.host}:{descriptor.port} succeeded.")

    async def _probe_with_deadline(self, descriptor: BrokerDescriptor, password: Optional[str]):
        try:
            await asyncio.wait_for(self._probe(descriptor, password), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ConnectError(f"MQTT test timed out after {self.timeout:g}s") from None

    async def _probe(self, descriptor: BrokerDescriptor, password: Optional[str]):
        try:
            tls_context = build_tls_context(descriptor.ca_path) if descriptor.tls else None
        except TlsConfigError as e:
            raise ConnectError(f"TLS setup failed: {e}") from e

        topic = status_topic(descriptor.topic_prefix)
        try:
            async with self._client_factory(
                hostname=descriptor.host,
                port=descriptor.port,
                identifier=tester_client_id(descriptor),
                username=descriptor.username,
                password=password,
                keepalive=descriptor.keepalive_secs,
                tls_context=tls_context,
                clean_session=True,
                timeout=self.timeout,
            ) as client:
                granted = await client.subscribe(topic, qos=0)
                _check_suback(topic, granted)
                logger.debug(f"Test subscription to '{topic}' acknowledged.")
        except aiomqtt.MqttError as e:
            raise ConnectError(f"MQTT error during test: {e}") from e
        except OSError as e:
            raise ConnectError(f"failed to reach {descriptor.host}:{descriptor.port}: {e}") from e


def _check_suback(topic: str, granted):
    # MQTT 3.1.1 gives plain ints, MQTT 5 gives ReasonCode objects
    for code in granted or ():
        value = getattr(code, "value", code)
        if isinstance(value, int) and value >= _SUBACK_FAILURE:
            raise ConnectError(f"subscription to '{topic}' was refused (code {value:#x})")


def tester_client_id(descriptor: BrokerDescriptor) -> str:
    """Client id for the one-shot test. Brokers drop the older of two connections sharing an id."""
    return f"{descriptor.client_id}{TEST_CLIENT_SUFFIX}"
