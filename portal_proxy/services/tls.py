"""
TLS service - certificate loading, dev certificate generation and the fallback policy.
"""
from __future__ import annotations

import os
import ssl
import subprocess
from dataclasses import dataclass
from typing import Any, Optional

from portal_proxy.logging import get_logger

logger = get_logger(__name__)

SELF_SIGNED_KEY_BITS = 2048
SELF_SIGNED_DAYS = 365
SELF_SIGNED_SUBJECT = "/CN=localhost"


class TLSConfigError(Exception):
    """TLS material is missing or unusable. A startup error, never a per-request one."""


@dataclass(frozen=True)
class TLSCredential:
    cert_path: str
    key_path: str
    self_signed: bool = False


def load_tls_credential(cert_path: str, key_path: str) -> ssl.SSLContext:
    """
    Load a certificate chain and private key into a server-side SSL context.

    Raises:
        TLSConfigError: If either file is missing, unreadable or not valid PEM
    """
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    try:
        context.load_cert_chain(certfile=cert_path, keyfile=key_path)
    except FileNotFoundError as e:
        raise TLSConfigError(f"TLS file not found: {e.filename or cert_path}") from e
    except PermissionError as e:
        raise TLSConfigError(f"TLS file not readable: {e.filename or cert_path}") from e
    except (ssl.SSLError, OSError) as e:
        raise TLSConfigError(
            f"Invalid TLS certificate or key ({cert_path}, {key_path}): {e}"
        ) from e
    return context


def generate_self_signed(cert_path: str, key_path: str) -> None:
    """
    Create a self-signed certificate and key with the openssl command line tool.

    For development only: the result carries no trust whatsoever.

    Raises:
        TLSConfigError: If openssl is not installed or fails
    """
    for path in (cert_path, key_path):
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    logger.warning(f"Generating self-signed TLS certificate {cert_path} (untrusted, development only)")
    commands = [
        ["openssl", "genrsa", "-out", key_path, str(SELF_SIGNED_KEY_BITS)],
        [
            "openssl", "req", "-new", "-x509",
            "-key", key_path,
            "-out", cert_path,
            "-days", str(SELF_SIGNED_DAYS),
            "-subj", SELF_SIGNED_SUBJECT,
        ],
    ]
    try:
        for command in commands:
            subprocess.run(command, check=True, capture_output=True)
    except FileNotFoundError as e:
        raise TLSConfigError("Cannot generate a certificate: openssl is not installed") from e
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.decode(errors="replace").strip() if e.stderr else ""
        raise TLSConfigError(f"openssl failed with exit code {e.returncode}: {stderr}") from e


def _unavailable(policy: str, message: str) -> None:
    """Apply the policy to a TLS problem: raise for `required`, warn otherwise."""
    if policy == "required":
        raise TLSConfigError(message)
    logger.warning(f"{message}; serving plain HTTP only")


def resolve_tls(config: Any) -> Optional[TLSCredential]:
    """
    Decide whether to serve TLS, following `proxy_tls_policy`.

    - disabled: never serve TLS
    - required: any problem with the certificate is fatal
    - fallback: problems are logged and the server runs without TLS

    Returns:
        The credential to serve with, or None for plain HTTP only

    Raises:
        TLSConfigError: Under the `required` policy when TLS cannot be served
    """
    policy = config.proxy_tls_policy
    if policy == "disabled":
        return None

    cert_path, key_path = config.proxy_tls_cert, config.proxy_tls_key
    if not cert_path or not key_path:
        _unavailable(policy, "No TLS certificate/key configured")
        return None

    self_signed = False
    if config.proxy_self_signed and not (os.path.exists(cert_path) and os.path.exists(key_path)):
        try:
            generate_self_signed(cert_path, key_path)
        except TLSConfigError as e:
            _unavailable(policy, str(e))
            return None
        self_signed = True

    try:
        load_tls_credential(cert_path, key_path)
    except TLSConfigError as e:
        _unavailable(policy, str(e))
        return None

    if self_signed:
        logger.warning("Serving HTTPS with a freshly generated self-signed certificate")
    logger.info(f"Loaded TLS certificate {cert_path}")
    return TLSCredential(cert_path=cert_path, key_path=key_path, self_signed=self_signed)
