"""
Brief: Fixtures providing a mutual-TLS fake service discovery controller.

Inputs:
  - None

Outputs:
  - tls_material: paths to a throwaway CA, server and client certificate set
  - fake_controller: running HTTPS server requiring client certificates
"""

import datetime
import ipaddress
import json
import ssl
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from types import SimpleNamespace

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID


def _name(cn):
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])


def _write_key(path, key):
    path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )


def _issue(ca_key, ca_cert, cn, *, server):
    key = ec.generate_private_key(ec.SECP256R1())
    now = datetime.datetime.now(datetime.timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(cn))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
            critical=False,
        )
        .add_extension(
            x509.ExtendedKeyUsage(
                [
                    ExtendedKeyUsageOID.SERVER_AUTH
                    if server
                    else ExtendedKeyUsageOID.CLIENT_AUTH
                ]
            ),
            critical=False,
        )
    )
    if server:
        builder = builder.add_extension(
            x509.SubjectAlternativeName(
                [
                    x509.DNSName("localhost"),
                    x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
                ]
            ),
            critical=False,
        )
    cert = builder.sign(ca_key, hashes.SHA256())
    return key, cert


@pytest.fixture(scope="session")
def tls_material(tmp_path_factory):
    """
    Brief: Generate a CA plus server and client certificates as PEM files.

    Inputs:
      - tmp_path_factory: pytest session temp dir factory

    Outputs:
      - SimpleNamespace with ca, server_cert, server_key, client_cert, client_key,
        other_ca (an unrelated CA for negative tests)
    """
    d = tmp_path_factory.mktemp("tls")
    now = datetime.datetime.now(datetime.timezone.utc)

    def _make_ca(cn):
        key = ec.generate_private_key(ec.SECP256R1())
        cert = (
            x509.CertificateBuilder()
            .subject_name(_name(cn))
            .issuer_name(_name(cn))
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(minutes=5))
            .not_valid_after(now + datetime.timedelta(days=1))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(key.public_key()),
                critical=False,
            )
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .sign(key, hashes.SHA256())
        )
        return key, cert

    ca_key, ca_cert = _make_ca("appsdns test CA")
    _, other_ca_cert = _make_ca("unrelated CA")
    server_key, server_cert = _issue(ca_key, ca_cert, "localhost", server=True)
    client_key, client_cert = _issue(ca_key, ca_cert, "appsdns", server=False)

    paths = SimpleNamespace(
        ca=d / "ca.crt",
        other_ca=d / "other-ca.crt",
        server_cert=d / "server.crt",
        server_key=d / "server.key",
        client_cert=d / "client.crt",
        client_key=d / "client.key",
    )
    paths.ca.write_bytes(ca_cert.public_bytes(serialization.Encoding.PEM))
    paths.other_ca.write_bytes(other_ca_cert.public_bytes(serialization.Encoding.PEM))
    paths.server_cert.write_bytes(server_cert.public_bytes(serialization.Encoding.PEM))
    paths.client_cert.write_bytes(client_cert.public_bytes(serialization.Encoding.PEM))
    _write_key(paths.server_key, server_key)
    _write_key(paths.client_key, client_key)
    return paths


class FakeControllerState:
    """Brief: Mutable behaviour shared between the test and the HTTP handler."""

    def __init__(self):
        self.status = 200
        self.hosts = {}
        self.raw_body = None
        self.requests = []
        self.lock = threading.Lock()

    def register(self, name, *ips):
        self.hosts[name] = list(ips)


def _make_handler(state):
    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):  # noqa: N802 - http.server naming
            with state.lock:
                state.requests.append(self.path)
            prefix = "/v1/registration/"
            if state.status != 200:
                body = b"internal error"
            elif state.raw_body is not None:
                body = state.raw_body
            elif self.path.startswith(prefix):
                name = self.path[len(prefix):]
                hosts = [
                    {"ip_address": ip, "port": 8080, "tags": {}}
                    for ip in state.hosts.get(name, [])
                ]
                body = json.dumps({"hosts": hosts, "env": "", "service": ""}).encode()
            else:
                body = b"{}"
            self.send_response(state.status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format, *args):
            pass

    return Handler


@pytest.fixture
def fake_controller(tls_material):
    """
    Brief: Serve the registration API over HTTPS, requiring a client certificate.

    Inputs:
      - tls_material: certificate set

    Outputs:
      - SimpleNamespace(host, port, state)
    """
    state = FakeControllerState()
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), _make_handler(state))
    httpd.daemon_threads = True
    ctx = ssl.create_default_context(
        ssl.Purpose.CLIENT_AUTH, cafile=str(tls_material.ca)
    )
    ctx.load_cert_chain(str(tls_material.server_cert), str(tls_material.server_key))
    ctx.verify_mode = ssl.CERT_REQUIRED
    httpd.socket = ctx.wrap_socket(httpd.socket, server_side=True)
    t = threading.Thread(target=httpd.serve_forever, daemon=True)
    t.start()
    try:
        yield SimpleNamespace(
            host="127.0.0.1", port=httpd.server_address[1], state=state
        )
    finally:
        httpd.shutdown()
        httpd.server_close()
        t.join(timeout=5)
