"""Tests for HTTPS readiness checks against a server requiring client certificates."""

import socket
import ssl
import threading

import pytest
import trustme

from servicelib.ports import allocate_free_port
from servicelib.protocol import ReadinessCheck, TlsMaterial
from servicelib.readiness import HttpProbe, wait_until_ready


class MutualTlsServer:
    """Completes a mutually-authenticated handshake, reads the request and
    closes without answering, the way Mononoke treats ``/``.

    Limited to TLS 1.2 so a rejected client certificate fails the handshake
    itself rather than the first read.
    """

    def __init__(self, ssl_context: ssl.SSLContext):
        self.ssl_context = ssl_context
        self.handshakes = 0
        self._stop = threading.Event()
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind(('127.0.0.1', 0))
        self._sock.listen(8)
        self._sock.settimeout(0.1)
        self.port = self._sock.getsockname()[1]
        self._thread = threading.Thread(target=self._serve, daemon=True)

    def _serve(self):
        while not self._stop.is_set():
            try:
                conn, _ = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            conn.settimeout(2)
            try:
                with self.ssl_context.wrap_socket(conn, server_side=True) as tls_conn:
                    self.handshakes += 1
                    data = b''
                    while b'\r\n\r\n' not in data:
                        chunk = tls_conn.recv(4096)
                        if not chunk:
                            break
                        data += chunk
            except OSError:
                # ssl.SSLError included: the client was rejected
                pass
            finally:
                conn.close()

    def __enter__(self):
        self._thread.start()
        return self

    def __exit__(self, *exc):
        self._stop.set()
        self._thread.join(timeout=5)
        self._sock.close()
        return False


def _write_leaf(cert, directory, name):
    cert_path = directory / f"{name}.crt"
    key_path = directory / f"{name}.key"
    cert.cert_chain_pems[0].write_to_path(str(cert_path))
    cert.private_key_pem.write_to_path(str(key_path))
    return cert_path, key_path


@pytest.fixture(scope="module")
def pki(tmp_path_factory):
    """A CA, a server certificate for 127.0.0.1, and client certificates
    from both the trusted CA and an unrelated one."""
    directory = tmp_path_factory.mktemp("pki")
    ca = trustme.CA()
    ca_path = directory / "ca.crt"
    ca.cert_pem.write_to_path(str(ca_path))

    server_cert = ca.issue_cert("127.0.0.1", "localhost")
    client_path, client_key = _write_leaf(ca.issue_cert("client.localhost"), directory, "client")
    other_path, other_key = _write_leaf(
        trustme.CA().issue_cert("client.localhost"), directory, "untrusted")

    return {
        "ca": ca,
        "server_cert": server_cert,
        "trusted": TlsMaterial(certificate=client_path, private_key=client_key, ca=ca_path),
        "untrusted": TlsMaterial(certificate=other_path, private_key=other_key, ca=ca_path),
    }


@pytest.fixture
def tls_server(pki):
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.maximum_version = ssl.TLSVersion.TLSv1_2
    context.verify_mode = ssl.CERT_REQUIRED
    pki["server_cert"].configure_cert(context)
    pki["ca"].configure_trust(context)
    with MutualTlsServer(context) as server:
        yield server


class TestMutualTlsReadiness:
    """Tests for HttpProbe with client certificates."""

    def test_handshake_then_empty_reply_is_ready(self, pki, tls_server):
        probe = HttpProbe(f"https://127.0.0.1:{tls_server.port}", tls=pki["trusted"])
        assert probe.check() is True
        assert tls_server.handshakes >= 1

    def test_wait_until_ready_over_tls(self, pki, tls_server):
        probe = HttpProbe(f"https://127.0.0.1:{tls_server.port}", tls=pki["trusted"])
        check = ReadinessCheck(probe=probe, timeout=2.0, poll_interval=0.05)
        assert wait_until_ready(check) == 1

    def test_refused_port_is_not_ready(self, pki):
        port = allocate_free_port()
        probe = HttpProbe(f"https://127.0.0.1:{port}", tls=pki["trusted"])
        assert probe.check() is False

    def test_untrusted_client_certificate_is_not_ready(self, pki, tls_server):
        probe = HttpProbe(f"https://127.0.0.1:{tls_server.port}", tls=pki["untrusted"])
        assert probe.check() is False
        assert tls_server.handshakes == 0

    def test_without_tls_material_is_not_ready(self, tls_server):
        """No client certificate and no trusted CA: fails without raising."""
        probe = HttpProbe(f"https://127.0.0.1:{tls_server.port}")
        assert probe.check() is False
        assert tls_server.handshakes == 0

    def test_response_mode_rejects_empty_reply(self, pki, tls_server):
        probe = HttpProbe(f"https://127.0.0.1:{tls_server.port}", tls=pki["trusted"],
                          mode=HttpProbe.RESPONSE)
        assert probe.check() is False
