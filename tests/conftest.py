"""
Pytest Configuration and Fixtures for the air_monitor project.

This module provides a scripted stand-in for `aiomqtt.Client` so the Session,
the Supervisor and the ConnectionTester can be exercised without a broker.
"""

import asyncio
import logging
import sys
import time
from types import SimpleNamespace

import pytest

from air_monitor.worker.models import BrokerDescriptor
from air_monitor.worker.session import ReconnectPolicy


# --- Broker Mocking ---

class FakeBroker:
    """
    Hands out FakeClients. Every connection consumes the next script:
    - an exception instance: raised while connecting,
    - a list of steps played on the message stream: (topic, payload) tuples,
      or an exception instance that drops the connection.
    Once the scripts run out, connections succeed and stay idle.
    """

    def __init__(self, *scripts):
        self.scripts = list(scripts)
        self.connect_kwargs = []
        self.subscriptions = []
        self.opened = 0
        self.closed = 0
        self.suback = (0,)
        self.subscribe_delay = 0.0

    def client(self, **kwargs):
        self.connect_kwargs.append(kwargs)
        return FakeClient(self)


class FakeClient:
    def __init__(self, broker: FakeBroker):
        self.broker = broker
        self.script = []

    async def __aenter__(self):
        script = self.broker.scripts.pop(0) if self.broker.scripts else []
        if isinstance(script, BaseException):
            raise script
        self.script = script
        self.broker.opened += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.broker.closed += 1
        return False

    async def subscribe(self, topic, qos=0, **kwargs):
        if self.broker.subscribe_delay:
            await asyncio.sleep(self.broker.subscribe_delay)
        self.broker.subscriptions.append((topic, qos))
        return self.broker.suback

    @property
    def messages(self):
        return self._stream()

    async def _stream(self):
        for step in self.script:
            await asyncio.sleep(0)
            if isinstance(step, BaseException):
                raise step
            topic, payload = step
            yield SimpleNamespace(topic=topic, payload=payload)
        # hold the connection open until cancelled
        await asyncio.Event().wait()


@pytest.fixture
def fake_broker():
    """Factory: fake_broker(script, script, ...) -> FakeBroker"""
    return FakeBroker


@pytest.fixture
def descriptor():
    return BrokerDescriptor(host="broker.test", topic_prefix="apollo_air1", username=None)


@pytest.fixture
def fast_policy():
    return ReconnectPolicy(initial=0.01, maximum=0.04)


@pytest.fixture
def collect_events():
    """
    Async helper: drains `channel` until `until(events)` is true.
    Fails the test instead of hanging when the condition never holds.
    """
    async def _collect(channel, until, timeout=2.0):
        events = []
        deadline = time.monotonic() + timeout
        while not until(events):
            if time.monotonic() > deadline:
                pytest.fail(f"Timed out waiting for events, got: {events}")
            events.extend(channel.drain())
            await asyncio.sleep(0.005)
        return events
    return _collect


@pytest.fixture
def poll_until():
    """Sync helper for the supervisor: polls a handle until `until(events)` is true."""
    def _poll(supervisor, handle, until, timeout=2.0):
        events = []
        deadline = time.monotonic() + timeout
        while not until(events):
            if time.monotonic() > deadline:
                pytest.fail(f"Timed out waiting for events, got: {events}")
            events.extend(supervisor.poll(handle))
            time.sleep(0.005)
        return events
    return _poll


@pytest.fixture(scope="session", autouse=True)
def setup_test_logging():
    """
    Configures the Python logging framework globally for all tests.
    Because tests bypass main.py, this ensures our logs are formatted
    and visible exactly how we want them during test runs.
    """
    formatter = logging.Formatter(fmt="%(levelname)-8s %(message)s - %(funcName)s:%(lineno)d ")
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)
