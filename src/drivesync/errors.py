"""Error taxonomy shared by the store, the services and the HTTP layer."""

from __future__ import annotations


class DriveError(Exception):
    """Base class for every error raised by drivesync."""

    code = "internal_error"


class ValidationError(DriveError):
    """Malformed input: bad path, missing field, unparsable key."""

    code = "bad_request"


class AuthError(DriveError):
    """Unauthorized key, bad challenge, bad signature, bad token."""

    code = "auth_failed"


class KeyFormatError(ValidationError, AuthError):
    """Public key that cannot be parsed into a supported OpenSSH key."""

    code = "auth_failed"


class NotFoundError(DriveError):
    """Unknown path or note id (or a tombstoned one)."""

    code = "not_found"


class StorageError(DriveError):
    """Underlying database or filesystem failure."""

    code = "internal_error"
