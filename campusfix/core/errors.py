"""Error taxonomy shared by the remote store, change feed and write path."""

from enum import Enum


class CampusFixError(Exception):
    """Base class for all errors raised by campusfix."""


class RemoteErrorKind(str, Enum):
    NETWORK = 'network'
    AUTHORIZATION = 'authorization'
    BAD_REQUEST = 'bad_request'
    SERVER = 'server'
    DECODE = 'decode'


class RemoteError(CampusFixError):
    """The relational store rejected or could not service a request."""

    def __init__(
        self,
        message: str,
        kind: RemoteErrorKind = RemoteErrorKind.SERVER,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    @classmethod
    def from_status(cls, status_code: int, message: str) -> 'RemoteError':
        if status_code in (401, 403):
            kind = RemoteErrorKind.AUTHORIZATION
        elif 400 <= status_code < 500:
            kind = RemoteErrorKind.BAD_REQUEST
        else:
            kind = RemoteErrorKind.SERVER
        return cls(message, kind=kind, status_code=status_code)


class UploadError(CampusFixError):
    """An object storage write failed."""

    def __init__(self, message: str, bucket: str, path: str):
        super().__init__(message)
        self.bucket = bucket
        self.path = path


class SubscriptionError(CampusFixError):
    """A change feed channel could not be established."""


class EntityDecodeError(CampusFixError):
    """A row or change payload did not match its collection's shape."""


class RegistrationClosedError(CampusFixError):
    """An event no longer accepts registrations (deadline passed or full)."""
