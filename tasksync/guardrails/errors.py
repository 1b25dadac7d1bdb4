import traceback
from typing import Optional

from fastapi import HTTPException


class TaskSyncError(Exception):
    """Base class for engine errors."""


class TranscriptFormatError(TaskSyncError):
    """Transcript is empty or has no recognizable speaker lines; the whole run fails."""


class ExtractionFailure(TaskSyncError):
    """Completion call errored or its reply could not be decoded. Nothing from the run is applied.
    Why available: Extraction fails closed; the caller gets zero candidates and this error instead of guessed tasks."""

    def __init__(self, message: str, raw_reply: Optional[str] = None):
        super().__init__(message)
        self.raw_reply = raw_reply


class MatchingDegraded(TaskSyncError):
    """Similarity index or adjudication unavailable. Absorbed by the reconciler, which falls back and tags the decision."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"{stage}: {message}")
        self.stage = stage


class AllocationConflict(TaskSyncError):
    """Counter increment returned a value that was already handed out. Must be impossible with an atomic counter store; never retried."""


class StoreWriteFailure(TaskSyncError):
    """One task store mutation failed. Reported per mutation; other mutations in the batch are unaffected."""

    def __init__(self, ticket_id: str, kind: str, message: str):
        super().__init__(f"{kind} {ticket_id}: {message}")
        self.ticket_id = ticket_id
        self.kind = kind


def as_http_500(e: Exception) -> HTTPException:
    """Log exception and return a generic 500 HTTPException (no internal details leaked).
    Why available: Centralized error handling so API never leaks stack traces or internal state to clients."""
    traceback.print_exc()
    return HTTPException(status_code=500, detail="Internal server error")


def as_http_error(e: Exception) -> HTTPException:
    """Map engine errors to HTTP: malformed transcript 400, extraction failure 502, allocation conflict 409; anything else goes through as_http_500.
    Why available: Used by the transport so callers can tell a bad upload from an upstream LLM outage."""
    if isinstance(e, TranscriptFormatError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, ExtractionFailure):
        return HTTPException(status_code=502, detail=f"Task extraction failed: {e}")
    if isinstance(e, AllocationConflict):
        return HTTPException(status_code=409, detail=str(e))
    return as_http_500(e)
