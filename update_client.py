"""HTTP(S) client used by the device to talk to the update server.

Two variants exist behind the ``Updater`` interface:

* ``HttpUpdater`` - plain requests session, default TLS verification for
  ``https://`` URLs.
* ``HttpsUpdater`` - mutual TLS.  The server certificate must chain to the
  configured CA file and the client presents its own certificate.  Request
  handling is delegated to an inner ``HttpUpdater``.

``new_updater`` picks the variant once, from the ``TrustConfig``.

Each call performs exactly one request.  Nothing is retried and nothing is
cached; the caller decides what to do with a failure.  All network I/O goes
through ``HttpUpdater._make_and_send_request`` so tests can replace it.
"""

import json
import logging
from dataclasses import dataclass, field

import requests
import urllib3
from requests.adapters import HTTPAdapter

from trust import TrustConfig, load_credentials
from update_errors import (
    ImplausiblySmallError,
    IncompleteResponseError,
    MalformedResponseError,
    ResponseDecodeError,
    ResponseReadError,
    TransportError,
    UnauthorizedError,
    UnexpectedStatusError,
    UnknownSizeError,
)

LOGGER_NAME = "update_client"
CHUNK = 1024
DEFAULT_USER_AGENT = "update-client"

# Compared with the Content-Length byte count as is.
MINIMUM_IMAGE_SIZE = 4096

# possible API responses received for update request
UPDATE_RESPONSE_HAVE_UPDATE = 200
UPDATE_RESPONSE_NO_UPDATES = 204
UPDATE_RESPONSE_ERROR = 404


# ------------------------------------------------------------
# Update descriptor

@dataclass(frozen=True)
class ImageInfo:
    uri: str = ""
    checksum: str = ""
    id: str = ""


@dataclass(frozen=True)
class UpdateDescriptor:
    id: str = ""
    image: ImageInfo = field(default_factory=ImageInfo)

    def is_valid(self) -> bool:
        return bool(self.id and self.image.id and self.image.checksum and self.image.uri)


def _field(obj: dict, name: str):
    """Look up *name* the way the server's JSON encoder expects: exact key
    first, then case-insensitively."""
    if name in obj:
        return obj[name]
    lowered = name.lower()
    for key, value in obj.items():
        if isinstance(key, str) and key.lower() == lowered:
            return value
    return None


def _string(obj: dict, name: str) -> str:
    value = _field(obj, name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ResponseDecodeError(
            "Error parsing data: field {} is {}, expected string".format(name, type(value).__name__)
        )
    return value


def _object(obj: dict, name: str) -> dict:
    value = _field(obj, name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ResponseDecodeError(
            "Error parsing data: field {} is {}, expected object".format(name, type(value).__name__)
        )
    return value


def decode_update_response(body: bytes) -> UpdateDescriptor:
    """Decode the JSON body of a ``200`` check response.

    Syntax errors raise ``MalformedResponseError``; anything else that keeps
    the body from mapping onto ``UpdateDescriptor`` raises
    ``ResponseDecodeError``.  Missing fields decode to empty strings and are
    left for ``validate_update``.
    """
    if isinstance(body, bytes):
        # stray bytes outside strings become syntax errors below
        body = body.decode("utf-8", errors="replace")
    try:
        data = json.loads(body)
    except json.JSONDecodeError as exc:
        raise MalformedResponseError("Error parsing data syntax: {}".format(exc)) from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ResponseDecodeError(
            "Error parsing data: expected object, got {}".format(type(data).__name__)
        )
    image = _object(data, "Image")
    return UpdateDescriptor(
        id=_string(data, "ID"),
        image=ImageInfo(
            uri=_string(image, "URI"),
            checksum=_string(image, "Checksum"),
            id=_string(image, "ID"),
        ),
    )


def validate_update(update: UpdateDescriptor, log: logging.Logger) -> None:
    if not update.is_valid():
        raise IncompleteResponseError("Missing parameters in encoded JSON response")
    log.info("Received correct request for getting image from: %s", update.image.uri)


def process_update_response(response, log: logging.Logger):
    """Classify a check response.

    Returns the ``UpdateDescriptor`` when an update is scheduled and ``None``
    when there is none.  Every other outcome raises.
    """
    log.debug("Received response: %s %s", response.status_code, getattr(response, "reason", "") or "")

    try:
        body = response.content
    except (requests.RequestException, OSError) as exc:
        raise ResponseReadError("Failed to read response body: {}".format(exc)) from exc

    status = response.status_code
    if status == UPDATE_RESPONSE_HAVE_UPDATE:
        log.debug("Have update available")
        update = decode_update_response(body)
        validate_update(update, log)
        return update
    if status == UPDATE_RESPONSE_NO_UPDATES:
        log.debug("No update available")
        return None
    if status == UPDATE_RESPONSE_ERROR:
        raise UnauthorizedError("Client not authorized to get update schedule.")
    raise UnexpectedStatusError(status)


# ------------------------------------------------------------
# Download handle

def content_length(response) -> int:
    """Declared payload size, ``-1`` when unknown."""
    value = response.headers.get("Content-Length")
    if value is None:
        return -1
    try:
        length = int(value)
    except (TypeError, ValueError):
        return -1
    return length if length >= 0 else -1


class DownloadResult:
    """Live update payload.

    The caller owns the underlying response and must ``close()`` it, either
    directly or by using the result as a context manager.
    """

    def __init__(self, response, length: int):
        self.response = response
        self.length = length

    def read(self, n=None) -> bytes:
        try:
            return self.response.raw.read(n)
        except (urllib3.exceptions.HTTPError, requests.RequestException, OSError) as exc:
            raise ResponseReadError("Failed to read update image: {}".format(exc)) from exc

    def iter_chunks(self, chunk: int = CHUNK):
        while True:
            b = self.read(chunk)
            if not b:
                break
            yield b

    def close(self) -> None:
        self.response.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


# ------------------------------------------------------------
# Clients

class Updater:
    """What the update agent needs from the network."""

    def get_scheduled_update(self, server: str, process=process_update_response):
        """Ask *server* whether an update is scheduled for this device."""
        raise NotImplementedError

    def fetch_update(self, url: str) -> DownloadResult:
        """Open the update payload at *url* for streaming."""
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class HttpUpdater(Updater):
    def __init__(
        self,
        log: logging.Logger = None,
        timeout=None,
        min_image_size: int = MINIMUM_IMAGE_SIZE,
        user_agent: str = DEFAULT_USER_AGENT,
        session: requests.Session = None,
    ):
        self.log = log or logging.getLogger(LOGGER_NAME)
        self.timeout = timeout
        self.min_image_size = int(min_image_size)
        self.session = session if session is not None else requests.Session()
        self.session.headers["User-Agent"] = user_agent

    def _headers(self, raw: bool) -> dict:
        if not raw:
            return {"Accept": "application/json"}
        # Content-Length must describe the bytes handed to the caller
        return {"Accept": "application/octet-stream", "Accept-Encoding": "identity"}

    def _make_and_send_request(self, method: str, url: str, raw: bool = False):
        self.log.debug("Sending HTTP [%s] request: %s", method, url)
        kwargs = {"headers": self._headers(raw), "stream": True}
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout
        try:
            return self.session.request(method, url, **kwargs)
        except requests.RequestException as exc:
            raise TransportError("HTTP {} {} failed: {}".format(method, url, exc)) from exc

    def get_scheduled_update(self, server: str, process=process_update_response):
        r = self._make_and_send_request("GET", server)
        try:
            return process(r, self.log)
        finally:
            r.close()

    def fetch_update(self, url: str) -> DownloadResult:
        r = self._make_and_send_request("GET", url, raw=True)
        length = content_length(r)
        if length < 0:
            r.close()
            raise UnknownSizeError("Will not continue with unknown image size.")
        if length < self.min_image_size:
            r.close()
            raise ImplausiblySmallError(length, self.min_image_size)
        self.log.debug("Update image size: %d bytes", length)
        return DownloadResult(r, length)

    def close(self) -> None:
        self.session.close()


class TLSAdapter(HTTPAdapter):
    """Transport adapter pinning every connection to one SSL context.

    Per-request ``verify`` and ``cert`` values are overridden: a CA bundle
    path reaching urllib3 would be loaded into the pinned context and widen
    the set of trusted servers.
    """

    def __init__(self, ssl_context, verify: bool = True, **kwargs):
        # HTTPAdapter.__init__ builds the pool manager, so set this first
        self.ssl_context = ssl_context
        self.verify = verify
        super().__init__(**kwargs)

    def send(self, request, **kwargs):
        kwargs["verify"] = self.verify
        kwargs["cert"] = None
        return super().send(request, **kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs["ssl_context"] = self.ssl_context
        return super().init_poolmanager(*args, **kwargs)

    def proxy_manager_for(self, *args, **kwargs):
        kwargs["ssl_context"] = self.ssl_context
        return super().proxy_manager_for(*args, **kwargs)


class HttpsUpdater(Updater):
    """Mutual TLS updater.

    Raises ``TrustPoolError`` or ``CredentialLoadError`` when the configured
    TLS material is unusable; no client exists in that case.
    """

    def __init__(self, config: TrustConfig, log: logging.Logger = None, **kwargs):
        log = log or logging.getLogger(LOGGER_NAME)
        self.credentials = load_credentials(config, log)

        verify = not self.credentials.trust_any
        session = requests.Session()
        # REQUESTS_CA_BUNDLE and friends must not touch the pinned trust
        session.trust_env = False
        session.verify = verify
        session.mount("https://", TLSAdapter(self.credentials.context, verify=verify))
        self.http = HttpUpdater(log=log, session=session, **kwargs)

    @property
    def log(self) -> logging.Logger:
        return self.http.log

    def get_scheduled_update(self, server: str, process=process_update_response):
        return self.http.get_scheduled_update(server, process)

    def fetch_update(self, url: str) -> DownloadResult:
        return self.http.fetch_update(url)

    def close(self) -> None:
        self.http.close()


def new_updater(config: TrustConfig = None, log: logging.Logger = None, **kwargs) -> Updater:
    """Build the updater matching *config*.

    An empty (or missing) config gives a plain ``HttpUpdater``; anything else
    a ``HttpsUpdater``.  Extra keyword arguments (``timeout``,
    ``min_image_size``, ``user_agent``) go to the underlying ``HttpUpdater``.
    """
    if config is None or config.is_empty():
        return HttpUpdater(log=log, **kwargs)
    return HttpsUpdater(config, log=log, **kwargs)
