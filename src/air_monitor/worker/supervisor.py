"""
Session Supervision and the Thread/Consumer Bridge.

This module contains the `ConnectionSupervisor`, which is the core of the
concurrency model. It is responsible for:
- Running exactly one Session on a dedicated worker thread with its own event loop.
- Owning the EventChannel (worker -> consumer) for ordered, non-blocking delivery.
- Delivering the stop signal safely across threads via `loop.call_soon_threadsafe`.
- Waiting for the worker thread to terminate before `stop` returns.

Policy: `start` while a handle is active raises AlreadyRunningError. A handle
stays active until `stop` has completed, even when its Session already ended
on its own (e.g. in the failed state).
"""
import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

import aiomqtt

from air_monitor.worker.channel import DEFAULT_CAPACITY, EventChannel
from air_monitor.worker.errors import AlreadyRunningError, SupervisorError
from air_monitor.worker.models import BrokerDescriptor, CredentialStore, ErrorEvent, WorkerEvent
from air_monitor.worker.session import ReconnectPolicy, Session

logger = logging.getLogger(__name__)

STOP_TIMEOUT = 10.0


@dataclass
class SupervisorHandle:
    """Everything that belongs to one started Session."""
    session: Session
    events: EventChannel
    loop: asyncio.AbstractEventLoop
    thread: threading.Thread
    stopped: bool = False

    @property
    def alive(self) -> bool:
        return self.thread.is_alive()


class ConnectionSupervisor:
    credential_store: Optional[CredentialStore]
    policy: Optional[ReconnectPolicy]
    channel_capacity: int
    stop_timeout: float
    _client_factory: Callable[..., Any]
    _active: Optional[SupervisorHandle] # at most one
    _lock: threading.Lock

    def __init__(self, credential_store: Optional[CredentialStore] = None,
                 policy: Optional[ReconnectPolicy] = None,
                 channel_capacity: int = DEFAULT_CAPACITY,
                 stop_timeout: float = STOP_TIMEOUT,
                 client_factory: Callable[..., Any] = aiomqtt.Client):
        self.credential_store = credential_store
        self.policy = policy
        self.channel_capacity = channel_capacity
        self.stop_timeout = stop_timeout
        self._client_factory = client_factory
        self._active = None
        self._lock = threading.Lock()

    @property
    def active(self) -> Optional[SupervisorHandle]:
        return self._active

    @property
    def running(self) -> bool:
        return self._active is not None

    def start(self, descriptor: BrokerDescriptor) -> SupervisorHandle:
        """
        Spawns the worker thread for a new Session and returns immediately.
        """
        descriptor.validate()
        with self._lock:
            if self._active is not None:
                raise AlreadyRunningError("a session is already running, stop it first")

            events = EventChannel(capacity=self.channel_capacity)
            session = Session(descriptor, events,
                              credential_store=self.credential_store,
                              policy=self.policy,
                              client_factory=self._client_factory)
            # created here so stop() can schedule onto it even before the thread runs it
            loop = asyncio.new_event_loop()
            thread = threading.Thread(target=self._worker, args=(loop, session, events),
                                      name="MqttSessionWorker", daemon=True)
            handle = SupervisorHandle(session=session, events=events, loop=loop, thread=thread)
            self._active = handle
            thread.start()
            logger.info(f"Session worker thread started for {descriptor.host}:{descriptor.port}.")
            return handle

    def stop(self, handle: SupervisorHandle):
        """
        Signals the Session to stop and blocks until its thread has finished.
        Calling it again on the same handle does nothing.
        """
        if handle.stopped:
            logger.debug("Attempted to stop a handle that was already stopped.")
            return

        if handle.thread.is_alive():
            try:
                handle.loop.call_soon_threadsafe(handle.session.request_stop)
            except RuntimeError:
                # the loop closed between is_alive() and the call, the thread is exiting
                logger.debug("Session loop already closed when stop was requested.")
            handle.thread.join(timeout=self.stop_timeout)
            if handle.thread.is_alive():
                raise SupervisorError(f"session worker did not terminate within {self.stop_timeout}s")

        handle.events.close()
        handle.stopped = True
        with self._lock:
            if self._active is handle:
                self._active = None
        logger.info("Session worker thread stopped.")

    def poll(self, handle: SupervisorHandle) -> List[WorkerEvent]:
        """Everything queued since the last poll. Never blocks."""
        return handle.events.drain()

    def _worker(self, loop: asyncio.AbstractEventLoop, session: Session, events: EventChannel):
        """
        The main function of the worker thread: runs the Session to completion on its own loop.
        """
        asyncio.set_event_loop(loop)
        logger.debug("Session worker loop has started.")
        try:
            loop.run_until_complete(session.run())
        except Exception as e:
            # a defect in the session itself; the consumer still has to hear about it
            logger.exception("Session worker crashed.")
            events.publish(ErrorEvent(description=f"worker crashed: {e}"))
        finally:
            try:
                loop.run_until_complete(loop.shutdown_asyncgens())
            finally:
                asyncio.set_event_loop(None)
                loop.close()
            logger.debug("Session worker loop has stopped.")
