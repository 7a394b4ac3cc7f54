import datetime
import ipaddress
import ssl
import threading
from contextlib import contextmanager
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


def _key():
    return ec.generate_private_key(ec.SECP256R1())


def _name(cn):
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])


def _cert(key, cn, issuer_key=None, issuer_cn=None, ca=False, local_host=False):
    issuer_key = issuer_key or key
    now = datetime.datetime.now(datetime.timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(cn))
        .issuer_name(_name(issuer_cn or cn))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_key.public_key()), critical=False
        )
    )
    if ca:
        builder = builder.add_extension(
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
    if local_host:
        builder = builder.add_extension(
            x509.SubjectAlternativeName(
                [x509.DNSName("localhost"), x509.IPAddress(ipaddress.ip_address("127.0.0.1"))]
            ),
            critical=False,
        )
    return builder.sign(issuer_key, hashes.SHA256())


def _write_cert(path, cert):
    path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    return str(path)


def _write_key(path, key):
    path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    return str(path)


class Pki:
    """Update CA with a device and a server certificate, plus an unrelated
    CA whose server certificate the device must not accept."""

    def __init__(self, base):
        ca_key = _key()
        client_key = _key()
        server_key = _key()
        self.ca_cert = _write_cert(base / "ca.pem", _cert(ca_key, "update-ca", ca=True))
        self.client_cert = _write_cert(
            base / "client.pem", _cert(client_key, "device-1", issuer_key=ca_key, issuer_cn="update-ca")
        )
        self.client_key = _write_key(base / "client.key", client_key)
        self.server_cert = _write_cert(
            base / "server.pem",
            _cert(server_key, "updates", issuer_key=ca_key, issuer_cn="update-ca", local_host=True),
        )
        self.server_key = _write_key(base / "server.key", server_key)

        foreign_ca_key = _key()
        foreign_server_key = _key()
        self.foreign_ca_cert = _write_cert(base / "foreign-ca.pem", _cert(foreign_ca_key, "other-ca", ca=True))
        self.foreign_server_cert = _write_cert(
            base / "foreign-server.pem",
            _cert(foreign_server_key, "impostor", issuer_key=foreign_ca_key, issuer_cn="other-ca", local_host=True),
        )
        self.foreign_server_key = _write_key(base / "foreign-server.key", foreign_server_key)

        self.other_key = _write_key(base / "other.key", _key())
        self.garbage = str(base / "garbage.pem")
        Path(self.garbage).write_text("this is not a certificate\n")

    def server_context(self, foreign=False, require_client_cert=True):
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        if foreign:
            ctx.load_cert_chain(self.foreign_server_cert, self.foreign_server_key)
        else:
            ctx.load_cert_chain(self.server_cert, self.server_key)
        if require_client_cert:
            ctx.verify_mode = ssl.CERT_REQUIRED
            ctx.load_verify_locations(self.ca_cert)
        return ctx


@pytest.fixture
def pki(tmp_path):
    return Pki(tmp_path)


class _Handler(BaseHTTPRequestHandler):
    def do_GET(self):
        getpeercert = getattr(self.connection, "getpeercert", None)
        self.server.peer_certs.append(getpeercert() if getpeercert else None)
        status, headers, body = self.server.reply
        self.send_response(status)
        for name, value in headers.items():
            self.send_header(name, value)
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, *args):
        pass


class _Server(HTTPServer):
    def handle_error(self, request, client_address):
        # rejected handshakes and cut connections are expected here
        pass


@contextmanager
def serve(reply=(204, {}, b""), ssl_context=None):
    """Run a one-reply HTTP(S) server on 127.0.0.1 in a background thread."""
    httpd = _Server(("127.0.0.1", 0), _Handler)
    httpd.reply = reply
    httpd.peer_certs = []
    if ssl_context is not None:
        httpd.socket = ssl_context.wrap_socket(httpd.socket, server_side=True)
    scheme = "https" if ssl_context is not None else "http"
    httpd.url = "{}://127.0.0.1:{}".format(scheme, httpd.server_address[1])
    t = threading.Thread(target=httpd.serve_forever, daemon=True)
    t.start()
    try:
        yield httpd
    finally:
        httpd.shutdown()
        httpd.server_close()


@pytest.fixture
def local_server():
    return serve
