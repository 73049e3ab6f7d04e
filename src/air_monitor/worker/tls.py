"""
TLS trust configuration for broker connections.

Builds an `ssl.SSLContext` that trusts either exactly one CA file or the
platform's native trust store. Used only when the descriptor asks for TLS.
"""
import logging
import os
import ssl
from pathlib import Path
from typing import Optional, Union

from air_monitor.worker.errors import TlsConfigError

logger = logging.getLogger(__name__)

MINIMUM_TLS_VERSION = ssl.TLSVersion.TLSv1_2


def build_tls_context(ca_path: Optional[Union[str, Path]] = None) -> ssl.SSLContext:
    """
    Returns a client context for verifying the broker certificate.

    With `ca_path` the file is the sole trust anchor. Without it the
    platform's native anchors are loaded. Any problem raises TlsConfigError.
    """
    if ca_path is not None:
        context = _context_from_ca_file(Path(ca_path))
    else:
        context = _context_from_native_store()

    context.minimum_version = MINIMUM_TLS_VERSION
    return context


def _context_from_ca_file(path: Path) -> ssl.SSLContext:
    if not path.is_file():
        raise TlsConfigError(f"CA file not found: {path}")

    try:
        # passing cafile skips load_default_certs, so nothing else is trusted
        context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH, cafile=str(path))
    except (OSError, ssl.SSLError) as e:
        raise TlsConfigError(f"failed to load CA file {path}: {e}") from e

    if context.cert_store_stats().get("x509", 0) == 0:
        raise TlsConfigError(f"no CA certificates found in {path}")

    logger.debug(f"Using CA file {path} as the only trust anchor.")
    return context


def _context_from_native_store() -> ssl.SSLContext:
    try:
        context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
    except (OSError, ssl.SSLError) as e:
        raise TlsConfigError(f"failed to load native certificates: {e}") from e

    loaded = context.cert_store_stats().get("x509_ca", 0)
    if loaded == 0 and not _native_capath_has_anchors():
        raise TlsConfigError("no native certificates available")

    logger.debug(f"Using native trust store ({loaded} CA certificates preloaded).")
    return context


def _native_capath_has_anchors() -> bool:
    """
    OpenSSL loads certificates from a capath directory lazily, so they do not
    show up in cert_store_stats() until a handshake needs them.
    """
    capath = ssl.get_default_verify_paths().capath
    if not capath or not os.path.isdir(capath):
        return False
    try:
        return any(True for _ in os.scandir(capath))
    except OSError as e:
        logger.warning(f"Could not read native certificate directory {capath}: {e}")
        return False
