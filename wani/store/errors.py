"""Exceptions raised by the local store."""


class LocalStoreError(Exception):
    """Base class for local store failures."""


class UnknownSubjectError(LocalStoreError):
    """An assignment or outcome referenced a subject that is not cached."""

    def __init__(self, subject_id: int):
        super().__init__(f"Subject {subject_id} is not in the local cache")
        self.subject_id = subject_id


class CorruptRecordError(LocalStoreError):
    """A stored record could not be read back. Never escapes the store."""
