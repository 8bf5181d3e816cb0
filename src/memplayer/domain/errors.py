"""Exception hierarchy shared by every layer."""


class MemplayerError(Exception):
    """Base class for memplayer errors."""


class InvalidRatingError(MemplayerError, ValueError):
    """A review rating outside 1..4 was supplied by the caller."""


class NoteNotFoundError(MemplayerError, KeyError):
    def __init__(self, note_id: str):
        super().__init__(note_id)
        self.note_id = note_id

    def __str__(self) -> str:
        return f"No note with id {self.note_id!r}"


class CardNotFoundError(MemplayerError, KeyError):
    """No card exists for (note_id, cloze_index), locally or remotely."""

    def __init__(self, note_id: str, cloze_index: int):
        super().__init__((note_id, cloze_index))
        self.note_id = note_id
        self.cloze_index = cloze_index

    def __str__(self) -> str:
        return f"No card for note {self.note_id} cloze c{self.cloze_index}"


class RemoteSyncError(MemplayerError):
    """A remote call failed; the operation may be retried."""

    retryable = True


class RemoteTimeoutError(RemoteSyncError):
    """A remote call did not answer in time; its server-side effect is unknown."""


class AmbiguousReviewError(RemoteSyncError):
    """
    A review submission timed out with unknown server-side effect.

    The caller must re-fetch the card state (SyncReconciler.refresh_card)
    before retrying, otherwise the review could be applied twice.
    """


class ConfirmationRequiredError(MemplayerError):
    """A destructive maintenance action was requested without confirmation."""


class LocalStateError(MemplayerError):
    """The local state file exists but cannot be read."""
