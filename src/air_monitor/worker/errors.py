"""
Error taxonomy for the worker.

Errors raised inside the Session loop never escape it: they are turned into
events on the channel or into a reconnect. The consumer only sees exceptions
from the synchronous calls it makes itself (start, stop, test, config).
"""


class AirMonitorError(Exception):
    """Base class for all air_monitor errors."""


class ConfigError(AirMonitorError):
    """Invalid broker settings."""


class TlsConfigError(AirMonitorError):
    """Bad or missing CA material. Fatal to one connect attempt."""


class ConnectError(AirMonitorError):
    """Transport or authentication failure."""


class CredentialError(AirMonitorError):
    """The credential store could not be read or written."""


class PayloadParseError(AirMonitorError):
    """A publish payload was not a numeric value."""


class AlreadyRunningError(AirMonitorError):
    """start() was called while a session handle is still active."""


class SupervisorError(AirMonitorError):
    """The worker thread did not terminate when asked to."""


class InvalidTransitionError(AirMonitorError):
    """A session state change that the state machine does not allow."""
