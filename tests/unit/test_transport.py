from __future__ import annotations

import socket
import ssl
import threading
from unittest.mock import MagicMock

import pytest

from iot_sandbox.config import ConnectionSettings
from iot_sandbox.transport import (
    CA,
    CERTIFICATE,
    DIAL,
    HANDSHAKE,
    TransportError,
    build_tls_context,
    open_transport,
)


class _TLSServer:
    """One-shot loopback TLS server presenting the given certificate."""

    def __init__(self, certfile, keyfile):
        self._ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        self._ctx.load_cert_chain(str(certfile), str(keyfile))
        self._listener = socket.create_server(("127.0.0.1", 0))
        self._listener.settimeout(5)
        self.port = self._listener.getsockname()[1]
        self.handshake_ok = False
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self):
        try:
            conn, _ = self._listener.accept()
        except OSError:
            return
        conn.settimeout(5)
        try:
            with self._ctx.wrap_socket(conn, server_side=True) as tls:
                self.handshake_ok = True
                tls.recv(1)
        except (ssl.SSLError, OSError):
            pass
        finally:
            self._listener.close()

    def join(self):
        self._thread.join(timeout=5)


def test_plain_tcp_dials_host_and_port_without_tls(monkeypatch):
    fake_sock = MagicMock()
    calls = []

    def fake_create_connection(address, timeout=None):
        calls.append((address, timeout))
        return fake_sock

    def no_tls(settings):
        raise AssertionError("TLS context must not be built for plain TCP")

    monkeypatch.setattr("iot_sandbox.transport.socket.create_connection", fake_create_connection)
    monkeypatch.setattr("iot_sandbox.transport.build_tls_context", no_tls)

    cs = ConnectionSettings(hostname="broker.example", tcp_port=1883, use_tls=False)
    sock = open_transport(cs)

    assert sock is fake_sock
    assert calls == [(("broker.example", 1883), 10.0)]
    fake_sock.settimeout.assert_called_once_with(None)


def test_dial_failure_is_transport_error(monkeypatch):
    def refuse(address, timeout=None):
        raise ConnectionRefusedError("refused")

    monkeypatch.setattr("iot_sandbox.transport.socket.create_connection", refuse)

    cs = ConnectionSettings(hostname="broker.example", tcp_port=1883, use_tls=False)
    with pytest.raises(TransportError) as exc:
        open_transport(cs)

    assert exc.value.kind == DIAL
    assert "broker.example:1883" in str(exc.value)


def test_ca_file_is_the_whole_trust_set(tls_dir):
    cs = ConnectionSettings(hostname="h", ca_file=str(tls_dir / "trusted-ca.pem"))

    ctx = build_tls_context(cs)

    cas = ctx.get_ca_certs()
    assert len(cas) == 1
    assert dict(x[0] for x in cas[0]["subject"])["commonName"] == "trusted-ca"
    assert ctx.verify_mode == ssl.CERT_REQUIRED
    assert ctx.check_hostname is True


def test_unparseable_ca_file(tls_dir):
    cs = ConnectionSettings(hostname="h", ca_file=str(tls_dir / "garbage.pem"))

    with pytest.raises(TransportError) as exc:
        build_tls_context(cs)

    assert exc.value.kind == CA


def test_missing_ca_file(tmp_path):
    cs = ConnectionSettings(hostname="h", ca_file=str(tmp_path / "missing.pem"))

    with pytest.raises(TransportError) as exc:
        build_tls_context(cs)

    assert exc.value.kind == CA


def test_client_key_pair_loads(tls_dir):
    cs = ConnectionSettings(
        hostname="h",
        cert_file=str(tls_dir / "client.pem"),
        key_file=str(tls_dir / "client.key"),
    )

    assert isinstance(build_tls_context(cs), ssl.SSLContext)


def test_encrypted_key_is_refused(tls_dir):
    cs = ConnectionSettings(
        hostname="h",
        cert_file=str(tls_dir / "client.pem"),
        key_file=str(tls_dir / "client-encrypted.key"),
    )

    with pytest.raises(TransportError) as exc:
        build_tls_context(cs)

    assert exc.value.kind == CERTIFICATE


def test_unparseable_certificate(tls_dir):
    cs = ConnectionSettings(
        hostname="h",
        cert_file=str(tls_dir / "garbage.pem"),
        key_file=str(tls_dir / "client.key"),
    )

    with pytest.raises(TransportError) as exc:
        build_tls_context(cs)

    assert exc.value.kind == CERTIFICATE


def test_bad_pem_fails_before_dialing(tls_dir, monkeypatch):
    def no_dial(address, timeout=None):
        raise AssertionError("must not dial")

    monkeypatch.setattr("iot_sandbox.transport.socket.create_connection", no_dial)
    cs = ConnectionSettings(hostname="h", ca_file=str(tls_dir / "garbage.pem"))

    with pytest.raises(TransportError) as exc:
        open_transport(cs)

    assert exc.value.kind == CA


def test_tls_handshake_with_server_signed_by_bundle(tls_dir):
    server = _TLSServer(tls_dir / "server.pem", tls_dir / "server.key")
    cs = ConnectionSettings(
        hostname="127.0.0.1",
        tcp_port=server.port,
        ca_file=str(tls_dir / "trusted-ca.pem"),
    )

    sock = open_transport(cs, timeout=5)
    try:
        assert isinstance(sock, ssl.SSLSocket)
        assert sock.version() is not None
        assert sock.gettimeout() is None
    finally:
        sock.close()
    server.join()

    assert server.handshake_ok


def test_tls_handshake_rejects_server_outside_bundle(tls_dir):
    server = _TLSServer(tls_dir / "rogue-server.pem", tls_dir / "rogue-server.key")
    cs = ConnectionSettings(
        hostname="127.0.0.1",
        tcp_port=server.port,
        ca_file=str(tls_dir / "trusted-ca.pem"),
    )

    with pytest.raises(TransportError) as exc:
        open_transport(cs, timeout=5)
    server.join()

    assert exc.value.kind == HANDSHAKE
    assert not server.handshake_ok


def test_default_roots_do_not_trust_private_ca(tls_dir):
    server = _TLSServer(tls_dir / "server.pem", tls_dir / "server.key")
    cs = ConnectionSettings(hostname="127.0.0.1", tcp_port=server.port)

    with pytest.raises(TransportError) as exc:
        open_transport(cs, timeout=5)
    server.join()

    assert exc.value.kind == HANDSHAKE
