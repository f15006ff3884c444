"""
EQVault - Error Kinds

Local computation errors propagate synchronously to the caller.
Transport errors are retried by the sync manager and only surface
as SyncFailed once retries are exhausted.
"""


class EQVaultError(Exception):
    """Base class for all EQVault errors."""


class EncryptionNotInitialized(EQVaultError):
    """The key manager was used before a key was derived."""

    def __init__(self, message: str = "Encryption not initialized"):
        super().__init__(message)


class DecryptionFailed(EQVaultError):
    """Ciphertext failed authentication (wrong key or tampered data)."""


class InvalidInput(EQVaultError, ValueError):
    """Caller supplied an empty or malformed batch."""


class ConsentRequired(EQVaultError):
    """A sync, aggregation, research or monetization call lacked explicit consent."""


class InsufficientParticipants(EQVaultError):
    """Aggregation attempted below the k-anonymity floor."""

    def __init__(self, participant_count: int, minimum_participants: int):
        self.participant_count = participant_count
        self.minimum_participants = minimum_participants
        super().__init__(
            f"Minimum {minimum_participants} participants required for aggregation "
            f"(got {participant_count})"
        )


class SyncDeferred(EQVaultError):
    """Sync conditions (Wi-Fi, frequency cap) are not met yet. Retryable."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class SyncFailed(EQVaultError):
    """A sync task exhausted its retries."""

    def __init__(self, task_id: str, reason: str):
        self.task_id = task_id
        self.reason = reason
        super().__init__(f"Sync task {task_id} failed: {reason}")


class TransportError(EQVaultError):
    """The external transport rejected or could not deliver a payload."""
