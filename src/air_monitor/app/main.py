"""
Main entry point for the air-monitor console application.

This module is responsible for:
- Parsing command-line arguments and the YAML configuration.
- Choosing the credential store (keyring or memory only).
- Running the consumer loop: start the supervisor, poll events, stop on a signal.
- Running the one-shot connection test and managing the stored password.
"""
import argparse
import getpass
import logging
import signal
import sys
import threading
from typing import Any, Dict, Optional, Sequence

from air_monitor import __version__
from air_monitor.app.config_loader import (
    DEFAULT_CONFIG_PATH,
    descriptor_from_config,
    load_config,
    remember_password,
    save_config,
    set_remember_password,
)
from air_monitor.app.readings import LatestReadings
from air_monitor.app.secrets import KeyringCredentialStore, MemoryCredentialStore, keyring_available
from air_monitor.worker.errors import AirMonitorError
from air_monitor.worker.models import (
    CREDENTIAL_ACCOUNT,
    CREDENTIAL_SERVICE,
    BrokerDescriptor,
    CredentialStore,
    MetricEvent,
    WorkerEvent,
)
from air_monitor.worker.supervisor import ConnectionSupervisor
from air_monitor.worker.tester import DEFAULT_TIMEOUT, ConnectionTester

POLL_INTERVAL = 0.2


def setup_logging(verbose: bool = False):
    """
    Configures the global logging settings for the entire application.
    This should be called as early as possible during startup.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s [%(levelname)-8s] %(name)s.%(funcName)s: %(message)s'
    )


logger = logging.getLogger(__name__)


def build_credential_store(config: Dict[str, Any], descriptor: BrokerDescriptor) -> CredentialStore:
    """Keyring when the user asked to remember the password, else an in-memory store."""
    if remember_password(config):
        if not keyring_available():
            logger.warning("remember_password is set but no keyring is available.")
        return KeyringCredentialStore()

    store = MemoryCredentialStore()
    if descriptor.username and sys.stdin.isatty():
        secret = getpass.getpass(f"MQTT password for {descriptor.username}: ")
        if secret:
            store.set_password(CREDENTIAL_SERVICE, CREDENTIAL_ACCOUNT, secret)
    return store


def log_event(event: WorkerEvent, readings: LatestReadings):
    if isinstance(event, MetricEvent):
        sample = event.sample
        logger.info(f"{sample.kind.value:<12} {sample.value:>10.2f}  {sample.topic}  [air quality: {readings.quality}]")
        for warning in readings.warnings():
            logger.warning(warning)
    else:
        logger.info(readings.status)


def run_monitor(supervisor: ConnectionSupervisor, descriptor: BrokerDescriptor,
                stop_event: threading.Event, poll_interval: float = POLL_INTERVAL) -> LatestReadings:
    """
    The consumer loop. Polls until `stop_event` is set, then stops the worker.
    """
    readings = LatestReadings()
    handle = supervisor.start(descriptor)
    try:
        while not stop_event.is_set():
            for event in supervisor.poll(handle):
                readings.apply(event)
                log_event(event, readings)
            stop_event.wait(poll_interval)
    finally:
        supervisor.stop(handle)
    return readings


def _install_signal_handlers(stop_event: threading.Event):
    # This tells Python what to do when you press Ctrl+C in the terminal.
    def _handler(signum, _frame):
        logger.info(f"Received exit signal {signal.Signals(signum).name}...")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handler)


def cmd_monitor(args: argparse.Namespace, config: Dict[str, Any]) -> int:
    descriptor = descriptor_from_config(config)
    store = build_credential_store(config, descriptor)
    supervisor = ConnectionSupervisor(credential_store=store)

    stop_event = threading.Event()
    _install_signal_handlers(stop_event)
    logger.info("Monitor is running. Press Ctrl+C to exit.")
    run_monitor(supervisor, descriptor, stop_event)
    return 0


def cmd_test(args: argparse.Namespace, config: Dict[str, Any]) -> int:
    descriptor = descriptor_from_config(config)
    store = build_credential_store(config, descriptor)
    password = None
    if descriptor.username:
        password = store.get_password(CREDENTIAL_SERVICE, CREDENTIAL_ACCOUNT)

    ConnectionTester(timeout=args.timeout).test(descriptor, password)
    logger.info("MQTT test succeeded")
    return 0


def cmd_set_password(args: argparse.Namespace, config: Dict[str, Any]) -> int:
    secret = getpass.getpass("MQTT password: ")
    if not secret:
        logger.error("Empty password, nothing stored.")
        return 1
    KeyringCredentialStore().set_password(CREDENTIAL_SERVICE, CREDENTIAL_ACCOUNT, secret)
    save_config(args.config, set_remember_password(config, True))
    logger.info("Saved password to the keyring")
    return 0


def cmd_forget_password(args: argparse.Namespace, config: Dict[str, Any]) -> int:
    KeyringCredentialStore().delete_password(CREDENTIAL_SERVICE, CREDENTIAL_ACCOUNT)
    save_config(args.config, set_remember_password(config, False))
    logger.info("Removed saved password")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="air-monitor", description="Air quality monitor for MQTT sensors")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="path to config.yaml")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    sub = parser.add_subparsers(dest="command")
    sub.add_parser("monitor", help="stream sensor metrics (default)").set_defaults(func=cmd_monitor)
    test = sub.add_parser("test", help="check broker reachability and credentials")
    test.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT)
    test.set_defaults(func=cmd_test)
    sub.add_parser("set-password", help="store the broker password in the keyring").set_defaults(func=cmd_set_password)
    sub.add_parser("forget-password", help="remove the stored password").set_defaults(func=cmd_forget_password)
    parser.set_defaults(func=cmd_monitor)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        config = load_config(args.config)
        return args.func(args, config)
    except AirMonitorError as e:
        logger.error(f"{e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
