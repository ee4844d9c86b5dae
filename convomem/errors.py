from __future__ import annotations


class ConvomemError(Exception):
    pass


class NotFoundError(ConvomemError, LookupError):
    pass


class SessionNotFoundError(NotFoundError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class ReferenceNotFoundError(NotFoundError):
    def __init__(self, reference_id: str) -> None:
        super().__init__(f"Reference not found: {reference_id}")
        self.reference_id = reference_id


class ValidationError(ConvomemError, ValueError):
    pass


class DuplicateSessionError(ValidationError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session already exists: {session_id}")
        self.session_id = session_id


class PersistenceError(ConvomemError):
    """Storage read/write/parse failure. Never escapes the blob store boundary."""
