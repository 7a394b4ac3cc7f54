"""TLS trust material for the update client.

``TrustConfig`` names three PEM files: the client certificate, its private
key and the CA certificate the update server must chain to.  Any of them may
be left empty.  Missing material is not an error: the client degrades to an
unauthenticated and/or non-verifying connection and says so with a warning.
This exists to simplify pre-production setups and should not be relied on in
the field.
"""

import logging
import ssl
from dataclasses import dataclass
from typing import Optional, Tuple

from update_errors import CredentialLoadError, TrustPoolError


@dataclass(frozen=True)
class TrustConfig:
    cert_file: str = ""
    cert_key: str = ""
    server_cert: str = ""

    def is_empty(self) -> bool:
        """True when no TLS material was requested at all."""
        return self == TrustConfig()


@dataclass(frozen=True)
class Credentials:
    """Trust material bound to a single client for its whole lifetime.

    ``context`` is the TLS client context handed to the transport.  When
    ``trust_any`` is set no server certificate is verified.
    """

    context: ssl.SSLContext
    client_cert: Optional[Tuple[str, str]] = None
    trust_any: bool = False


def _client_context() -> ssl.SSLContext:
    return ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)


def _trust_any_context() -> ssl.SSLContext:
    ctx = _client_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


def load_server_trust(path: str, log: logging.Logger) -> Optional[ssl.SSLContext]:
    """Return a TLS client context trusting only the certificates in *path*.

    ``None`` means no server certificate was configured and every server is
    trusted.  Raises ``TrustPoolError`` when the file cannot be read or holds
    no PEM certificate.
    """
    if not path:
        log.warning("Server certificate not provided. Trusting all servers.")
        return None

    try:
        with open(path, "rb") as f:
            cacert = f.read()
    except OSError as exc:
        raise TrustPoolError("Cannot read trusted server certificate {}: {}".format(path, exc)) from exc

    ctx = _client_context()
    try:
        # str cadata is parsed as PEM; bytes would be taken as DER
        ctx.load_verify_locations(cadata=cacert.decode("latin-1"))
    except (ssl.SSLError, ValueError) as exc:
        raise TrustPoolError("Error adding trusted server certificate to pool: {}".format(exc)) from exc

    if not ctx.cert_store_stats().get("x509"):
        raise TrustPoolError("Error adding trusted server certificate to pool.")
    log.debug("Loaded trusted server certificates from %s", path)
    return ctx


def load_client_credential(cert_path: str, key_path: str, log: logging.Logger) -> Optional[Tuple[str, str]]:
    """Check that *cert_path* and *key_path* form a usable key pair.

    Returns the ``(cert, key)`` pair, or ``None`` when either path is empty.
    """
    if not cert_path or not key_path:
        log.warning("No client key and certificate provided. Server will see an unauthenticated client.")
        return None

    try:
        _client_context().load_cert_chain(cert_path, key_path)
    except (OSError, ValueError) as exc:
        # ssl.SSLError is an OSError: covers missing files, bad PEM and key mismatch
        raise CredentialLoadError("Failed to load certificate and key: {}".format(exc)) from exc
    return cert_path, key_path


def load_credentials(config: TrustConfig, log: logging.Logger) -> Credentials:
    pool = load_server_trust(config.server_cert, log)
    client_cert = load_client_credential(config.cert_file, config.cert_key, log)

    ctx = pool if pool is not None else _trust_any_context()
    if client_cert is not None:
        try:
            ctx.load_cert_chain(*client_cert)
        except (OSError, ValueError) as exc:
            raise CredentialLoadError("Failed to load certificate and key: {}".format(exc)) from exc
    return Credentials(context=ctx, client_cert=client_cert, trust_any=pool is None)
