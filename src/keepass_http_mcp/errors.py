import enum
from typing import Optional


class KeePassHttpError(Exception):
    """Base class for every failure raised by the KeePass HTTP client."""


class ConfigError(KeePassHttpError):
    """Configuration is missing or unusable. Never retried."""


class TransportError(KeePassHttpError):
    """The HTTP call did not complete with a success status code."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DecodeError(KeePassHttpError):
    """The response body is not in an expected shape."""


class ProtocolError(KeePassHttpError):
    """The server reported a logical failure."""


class AssociationErrorKind(enum.Enum):
    MISSING = "missing"
    INVALID = "invalid"


class AssociationError(KeePassHttpError):
    """
    Raised when the shared key cannot be used.

    MISSING means no key is stored at all; INVALID means a stored key was
    rejected by the server.
    """

    def __init__(self, kind: AssociationErrorKind, message: Optional[str] = None):
        if message is None:
            if kind is AssociationErrorKind.MISSING:
                message = "KeePass HTTP association required."
            else:
                message = "KeePass HTTP association is no longer valid."
        super().__init__(message)
        self.kind = kind

    @property
    def is_missing(self) -> bool:
        return self.kind is AssociationErrorKind.MISSING

    @property
    def is_invalid(self) -> bool:
        return self.kind is AssociationErrorKind.INVALID


class KeyStoreError(KeePassHttpError):
    """The durable key storage could not be read or written."""
