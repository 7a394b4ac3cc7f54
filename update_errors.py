"""Exception hierarchy for the update transport client.

Every failure a caller can see derives from ``UpdateError`` so a single
``except UpdateError`` is enough for code that only wants to know whether
the attempt worked.  The subclasses carry the kind of failure, which is what
a caller needs to decide whether another attempt makes sense.
"""


class UpdateError(Exception):
    """Base class for update client failures."""


# ------------------------------------------------------------
# Configuration errors (fatal, raised while building a client)

class TrustStoreError(UpdateError):
    """TLS material could not be loaded."""


class TrustPoolError(TrustStoreError):
    """No usable trusted server certificate was found."""


class CredentialLoadError(TrustStoreError):
    """Client certificate and key could not be loaded or do not match."""


# ------------------------------------------------------------
# Per-call errors

class TransportError(UpdateError):
    """The request never produced a response."""


class ResponseReadError(UpdateError):
    """The response body could not be read."""


class ProtocolError(UpdateError):
    """The server answered outside of the update protocol."""


class MalformedResponseError(ProtocolError):
    """The update body is not syntactically valid JSON."""


class ResponseDecodeError(ProtocolError):
    """The update body is JSON but does not have the expected shape."""


class IncompleteResponseError(ProtocolError):
    """The update body is missing one of the required fields."""


class UnauthorizedError(ProtocolError):
    """The server refuses to schedule an update for this client."""


class UnexpectedStatusError(ProtocolError):
    def __init__(self, status_code: int):
        super().__init__("Invalid response received from server (HTTP {})".format(status_code))
        self.status_code = status_code


# ------------------------------------------------------------
# Payload errors (download only)

class PayloadError(UpdateError):
    """The update payload was rejected before it was exposed."""


class UnknownSizeError(PayloadError):
    pass


class ImplausiblySmallError(PayloadError):
    def __init__(self, length: int, minimum: int):
        super().__init__(
            "Less than {} bytes image update ({} bytes)? Something is wrong, aborting.".format(minimum, length)
        )
        self.length = length
        self.minimum = minimum
