"""
Byte-stream transport to the broker: plain TCP or TLS.

One attempt, no retry. A failure here means the settings (address, PEM
material) need fixing, so every error is raised to the caller as a
TransportError tagged with the step that failed.
"""

from __future__ import annotations

import logging
import socket
import ssl

from iot_sandbox.config import ConnectionSettings

logger = logging.getLogger(__name__)

DIAL = "dial"
CERTIFICATE = "certificate"
CA = "ca"
HANDSHAKE = "handshake"


class TransportError(ConnectionError):
    """Raised when the transport to the broker cannot be established."""

    def __init__(self, kind: str, detail: str) -> None:
        super().__init__(f"{kind}: {detail}")
        self.kind = kind
        self.detail = detail


def _refuse_encrypted_key() -> str:
    # Only called by OpenSSL when the private key is encrypted.
    raise TransportError(CERTIFICATE, "password protected key files are not supported")


def build_tls_context(settings: ConnectionSettings) -> ssl.SSLContext:
    """
    Client TLS context for settings.

    CA_FILE, when given, is the complete trust set; otherwise the platform
    default roots are used. CERT_FILE/KEY_FILE add a client certificate.
    """
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.check_hostname = True
    ctx.verify_mode = ssl.CERT_REQUIRED

    if settings.cert_file and settings.key_file:
        try:
            ctx.load_cert_chain(
                settings.cert_file,
                settings.key_file,
                password=_refuse_encrypted_key,
            )
        except TransportError:
            raise
        except (ssl.SSLError, OSError) as exc:
            raise TransportError(
                CERTIFICATE,
                f"could not load key pair {settings.cert_file}, {settings.key_file}: {exc}",
            ) from exc
        logger.debug("Loaded client certificate %s", settings.cert_file)

    if settings.ca_file:
        try:
            ctx.load_verify_locations(cafile=settings.ca_file)
        except (ssl.SSLError, OSError) as exc:
            raise TransportError(
                CA, f"could not load CA bundle {settings.ca_file}: {exc}"
            ) from exc
        logger.debug("Trusting CA bundle %s only", settings.ca_file)
    else:
        ctx.load_default_certs(ssl.Purpose.SERVER_AUTH)

    return ctx


def _dial(settings: ConnectionSettings, timeout: float) -> socket.socket:
    try:
        return socket.create_connection(
            (settings.hostname, settings.tcp_port), timeout=timeout
        )
    except OSError as exc:
        raise TransportError(DIAL, f"could not connect to {settings.address}: {exc}") from exc


def open_transport(settings: ConnectionSettings, *, timeout: float = 10.0) -> socket.socket:
    """
    Open the connection described by settings.

    Returns a connected blocking socket (an ssl.SSLSocket with the handshake
    completed when use_tls is set). Raises TransportError.
    """
    if not settings.use_tls:
        logger.info("Opening TCP connection to %s", settings.address)
        sock = _dial(settings, timeout)
        sock.settimeout(None)
        return sock

    # Build the context first so bad PEM material fails before any network I/O.
    ctx = build_tls_context(settings)

    logger.info("Opening TLS connection to %s", settings.address)
    sock = _dial(settings, timeout)
    try:
        tls_sock = ctx.wrap_socket(sock, server_hostname=settings.hostname)
    except (ssl.SSLError, OSError) as exc:
        sock.close()
        raise TransportError(
            HANDSHAKE, f"TLS handshake with {settings.address} failed: {exc}"
        ) from exc

    tls_sock.settimeout(None)
    logger.debug("TLS established: %s %s", tls_sock.version(), tls_sock.cipher())
    return tls_sock
