import asyncio
import socket
import time

import pytest
from aiomqtt import Client

from air_monitor.worker.models import BrokerDescriptor, ConnectedEvent, MetricEvent, MetricKind
from air_monitor.worker.supervisor import ConnectionSupervisor
from air_monitor.worker.tester import ConnectionTester

BROKER_HOST = "localhost"
BROKER_PORT = 1883


def _broker_reachable() -> bool:
    try:
        with socket.create_connection((BROKER_HOST, BROKER_PORT), timeout=0.5):
            return True
    except OSError:
        return False


pytestmark = pytest.mark.skipif(not _broker_reachable(), reason="no MQTT broker on localhost:1883")


@pytest.fixture
def integration_descriptor():
    """Descriptor pointing to the real local Mosquitto."""
    return BrokerDescriptor(host=BROKER_HOST, port=BROKER_PORT,
                            client_id="air-monitor-integration", topic_prefix="air_integration_test")


def test_connection_tester_against_real_broker(integration_descriptor):
    ConnectionTester(timeout=2.0).test(integration_descriptor)


def test_supervisor_receives_metrics_from_real_broker(integration_descriptor, poll_until):
    """
    Integration Test:
    1. Starts the supervisor (connects to localhost:1883 from its worker thread).
    2. Publishes a CO2 reading with a separate client.
    3. Verifies the reading comes out of poll() as a MetricEvent.
    """
    supervisor = ConnectionSupervisor()
    handle = supervisor.start(integration_descriptor)
    try:
        poll_until(supervisor, handle, lambda events: any(isinstance(e, ConnectedEvent) for e in events))

        async def publish():
            async with Client(BROKER_HOST, BROKER_PORT) as client:
                await client.publish("air_integration_test/sensor/co2/state", payload=b"812")

        asyncio.run(publish())

        events = poll_until(supervisor, handle,
                            lambda events: any(isinstance(e, MetricEvent) for e in events), timeout=3.0)
        metric = next(e for e in events if isinstance(e, MetricEvent))
        assert metric.sample.kind is MetricKind.CO2
        assert metric.sample.value == 812.0
    finally:
        started = time.monotonic()
        supervisor.stop(handle)
        assert time.monotonic() - started < 2.0
