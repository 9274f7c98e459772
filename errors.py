# errors.py
# =============================================================================
# FitTrack error taxonomy. app.py maps each class to an HTTP status.
# =============================================================================

from __future__ import annotations

from typing import List


class FitTrackError(Exception):
    """Base class for every error raised by FitTrack modules."""


class ConfigurationError(FitTrackError):
    """Store credentials or environment missing/malformed. Fatal at startup."""


class AuthenticationError(FitTrackError):
    """The caller could not be identified."""


class StoreOperationError(FitTrackError):
    """A create/update/delete/subscribe against the document store failed."""


class DocumentNotFound(StoreOperationError):
    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"Document {doc_id} not found in {collection}")


class PartialDeletionError(StoreOperationError):
    """A non-atomic multi-document delete stopped halfway."""

    def __init__(self, deleted: List[str], failed: List[str]):
        self.deleted = list(deleted)
        self.failed = list(failed)
        super().__init__(
            f"Deleted {len(self.deleted)} document(s), {len(self.failed)} failed: {self.failed}"
        )


class PlanGenerationError(FitTrackError):
    """The generative-text call failed or returned a non-conforming payload."""
