"""Durable local cache: subjects, assignments, outcome queue, sync cursors."""

from wani.store.errors import CorruptRecordError, LocalStoreError, UnknownSubjectError
from wani.store.local_store import AssignmentView, LocalStore

__all__ = [
    "AssignmentView",
    "CorruptRecordError",
    "LocalStore",
    "LocalStoreError",
    "UnknownSubjectError",
]
