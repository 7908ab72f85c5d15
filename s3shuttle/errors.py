"""Exception types raised by s3shuttle."""

from typing import Optional


class S3ShuttleError(Exception):
    """Base class for all s3shuttle errors"""
    pass


class ConfigurationError(S3ShuttleError):
    """Bad or missing configuration, detected before any network or disk I/O"""
    pass


class AnonymousCredentialsError(ConfigurationError):
    """Raised when an operation needs a secret key and none is configured"""

    def __init__(self, message: str = "presigning cannot be done with anonymous credentials"):
        super().__init__(message)


class S3RequestError(S3ShuttleError):
    """Custom exception for S3 request errors"""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ''):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class SessionError(S3ShuttleError):
    pass


class SessionNotFoundError(SessionError):
    def __init__(self, session_id: str, reason: str = 'not found'):
        super().__init__(f"Session '{session_id}' {reason}.")
        self.session_id = session_id


class SessionStorageError(SessionError):
    """Session files could not be written, read or removed"""
    pass


class SessionStateError(SessionError):
    """Operation not allowed in the session's current lifecycle state"""
    pass


class TransferError(S3ShuttleError):
    def __init__(self, message: str, session_id: str = ''):
        super().__init__(message)
        self.session_id = session_id
