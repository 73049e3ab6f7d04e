import threading
import time

import pytest

from air_monitor.worker.channel import EventChannel
from air_monitor.worker.models import ErrorEvent, StatusEvent

"""
The event channel: ordered delivery, non-blocking drain, drop-oldest overflow.
"""


def _status(i):
    return StatusEvent(message=f"s{i}")


def test_drain_returns_events_in_order_and_empties_the_channel():
    channel = EventChannel()
    for i in range(5):
        channel.publish(_status(i))

    assert [e.message for e in channel.drain()] == ["s0", "s1", "s2", "s3", "s4"]
    assert channel.drain() == []


def test_drain_on_empty_channel_does_not_block():
    channel = EventChannel()
    started = time.monotonic()
    assert channel.drain() == []
    assert time.monotonic() - started < 0.05


def test_overflow_drops_oldest_and_reports_it():
    channel = EventChannel(capacity=3, put_timeout=0.01)
    for i in range(5):
        channel.publish(_status(i))

    events = channel.drain()

    assert isinstance(events[0], StatusEvent) and events[0].message == "s3"
    assert isinstance(events[1], ErrorEvent)
    assert "dropped 2 events" in events[1].description
    assert isinstance(events[2], StatusEvent) and events[2].message == "s4"
    assert channel.dropped == 4


def test_producer_waits_briefly_for_the_consumer():
    channel = EventChannel(capacity=2, put_timeout=1.0)
    channel.publish(_status(0))
    channel.publish(_status(1))

    drained = []
    consumer = threading.Timer(0.05, lambda: drained.extend(channel.drain()))
    consumer.start()
    channel.publish(_status(2)) # blocks until the timer drains
    consumer.join()

    assert [e.message for e in drained] == ["s0", "s1"]
    assert [e.message for e in channel.drain()] == ["s2"]
    assert channel.dropped == 0


def test_close_discards_pending_and_ignores_later_events():
    channel = EventChannel()
    channel.publish(_status(0))
    channel.publish(_status(1))

    assert channel.close() == 2
    channel.publish(_status(2))

    assert channel.closed
    assert channel.drain() == []


def test_capacity_must_leave_room_for_the_overflow_notice():
    with pytest.raises(ValueError):
        EventChannel(capacity=1)
