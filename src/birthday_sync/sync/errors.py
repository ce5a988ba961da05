"""Exception hierarchy for record synchronization."""

from __future__ import annotations


class SyncError(RuntimeError):
    """Base error raised by the record synchronization engine."""


class CredentialError(SyncError):
    """Raised when calendar credentials for an owner cannot be used."""

    def __init__(self, owner_id: str, message: str) -> None:
        self.owner_id = owner_id
        self.message = message
        super().__init__(f"Calendar credentials for owner {owner_id!r} unusable: {message}")


class CredentialRevokedError(CredentialError):
    """Raised when the owner's calendar grant is permanently gone.

    Records that fail with this error are not retried automatically; the
    owner has to reconnect their calendar account first.
    """


class CredentialNotConnectedError(CredentialRevokedError):
    """Raised when the owner never connected a calendar account.

    Treated like a revocation for retries; only the reported message differs.
    """

    def __init__(self, owner_id: str) -> None:
        super().__init__(owner_id, "no calendar account is connected")


class CredentialUnavailableError(CredentialError):
    """Raised when credentials could not be resolved for a transient reason."""


class StrictModeError(SyncError):
    """Raised when a sync would write into the owner's primary calendar."""

    def __init__(self, calendar_id: str) -> None:
        self.calendar_id = calendar_id
        super().__init__(
            f"Refusing to sync into calendar {calendar_id!r}; a dedicated calendar is required"
        )


class RecordNotFoundError(SyncError):
    """Raised when the record to synchronize does not exist."""

    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        super().__init__(f"Record {record_id!r} not found")


class DuplicateEventKeyError(SyncError):
    """Raised when the event builder emits two descriptors with the same key."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Event builder produced duplicate event key {key!r}")


class WriteBackConflictError(SyncError):
    """Raised when the sync result could not be persisted after repeated CAS conflicts."""

    def __init__(self, record_id: str, attempts: int) -> None:
        self.record_id = record_id
        self.attempts = attempts
        super().__init__(
            f"Could not write sync state for record {record_id!r} after {attempts} attempts"
        )
