import base64
import datetime
import select
import socket
import ssl
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import urlsplit

import pytest
import structlog
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

AUTH_USER = "probe"
AUTH_PASS = "s3cret"
EXPECTED_AUTH = "Basic " + base64.b64encode(f"{AUTH_USER}:{AUTH_PASS}".encode()).decode()

_ENV_VARS = (
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "ALL_PROXY",
    "NO_PROXY",
    "http_proxy",
    "https_proxy",
    "all_proxy",
    "no_proxy",
    "TEST_USER",
    "TEST_PASS",
    "URLPROBE_REQUEST_INTERVAL",
    "URLPROBE_TIMEOUT",
    "URLPROBE_PROXY_HOST",
    "URLPROBE_PROXY_PORT",
    "URLPROBE_RECREATE_CLIENTS",
    "URLPROBE_CA_BUNDLE",
    "URLPROBE_LOG_FORMAT",
    "URLPROBE_LOG_FILE",
)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


class _ProbeHandler(BaseHTTPRequestHandler):
    """Origin server and plain-HTTP forward proxy in one.

    ``/protected`` wants Basic credentials, ``/empty`` answers with no body,
    anything else returns a short text body. Requests are recorded as
    ``(path, headers)`` on the server.
    """

    def do_GET(self):
        self.server.requests.append((self.path, dict(self.headers)))
        path = urlsplit(self.path).path
        if path == "/protected" and self.headers.get("Authorization") != EXPECTED_AUTH:
            self._reply(401, b"", {"WWW-Authenticate": 'Basic realm="probe"'})
            return
        if path == "/empty":
            self._reply(200, b"")
            return
        self._reply(200, b"hello from probe server", {"Content-Type": "text/plain"})

    def do_CONNECT(self):
        # tunnels to localhost on the requested port, whatever the host
        self.server.requests.append((self.path, dict(self.headers)))
        _host, _, port = self.path.rpartition(":")
        upstream = socket.create_connection(("127.0.0.1", int(port)), timeout=5)
        self.send_response(200, "Connection established")
        self.end_headers()
        self.close_connection = True
        with upstream:
            sockets = [self.connection, upstream]
            while True:
                readable, _, _ = select.select(sockets, [], [], 5)
                if not readable:
                    return
                for sock in readable:
                    data = sock.recv(65536)
                    if not data:
                        return
                    (upstream if sock is self.connection else self.connection).sendall(data)

    def _reply(self, status, body, headers=None):
        self.send_response(status)
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def http_server():
    server = ThreadingHTTPServer(("127.0.0.1", 0), _ProbeHandler)
    server.requests = []
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


def _name(common_name):
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def make_certificate(hostname):
    """Issue a server certificate for ``hostname`` from a throwaway CA.

    Returns ``(ca_cert, cert, key)``.
    """
    now = datetime.datetime.now(datetime.timezone.utc)
    valid_from = now - datetime.timedelta(minutes=5)
    valid_until = now + datetime.timedelta(days=1)

    ca_key = ec.generate_private_key(ec.SECP256R1())
    ca_ski = x509.SubjectKeyIdentifier.from_public_key(ca_key.public_key())
    ca_cert = (
        x509.CertificateBuilder()
        .subject_name(_name("url-probe test CA"))
        .issuer_name(_name("url-probe test CA"))
        .public_key(ca_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(valid_from)
        .not_valid_after(valid_until)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
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
        .add_extension(ca_ski, critical=False)
        .sign(ca_key, hashes.SHA256())
    )

    key = ec.generate_private_key(ec.SECP256R1())
    cert = (
        x509.CertificateBuilder()
        .subject_name(_name(hostname))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(valid_from)
        .not_valid_after(valid_until)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False)
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(ca_ski), critical=False
        )
        .sign(ca_key, hashes.SHA256())
    )
    return ca_cert, cert, key


@pytest.fixture
def https_server(tmp_path):
    """TLS origin for ``example.test``; ``ca_bundle`` is the PEM file to trust."""
    ca_cert, cert, key = make_certificate("example.test")
    ca_path = tmp_path / "ca.pem"
    ca_path.write_bytes(ca_cert.public_bytes(serialization.Encoding.PEM))
    cert_path = tmp_path / "server.pem"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path = tmp_path / "server.key"
    key_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(cert_path, key_path)
    server = ThreadingHTTPServer(("127.0.0.1", 0), _ProbeHandler)
    server.socket = context.wrap_socket(server.socket, server_side=True)
    server.requests = []
    server.ca_bundle = str(ca_path)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def closed_port():
    """A localhost port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


class FakeDns:
    def __init__(self, table):
        self.table = dict(table)
        self.lookups = []

    def lookup(self, hostname):
        self.lookups.append(hostname)
        if hostname not in self.table:
            raise socket.gaierror(socket.EAI_NONAME, f"Name or service not known: {hostname}")
        return list(self.table[hostname])


@pytest.fixture
def fake_dns():
    return FakeDns(
        {
            "example.test": ["127.0.0.1"],
            "origin.test": ["127.0.0.1"],
            "127.0.0.1": ["127.0.0.1"],
        }
    )
