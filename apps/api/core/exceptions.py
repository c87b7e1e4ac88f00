"""
Custom exception classes and error handling.

Provides consistent error responses across the API. Every plan-adaptation
failure carries a stable `error_code` so callers can branch on it.
"""
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from typing import Optional, Dict, Any, Sequence


class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(APIException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND"
        )


class ValidationError(APIException):
    """Validation error."""

    def __init__(self, detail: str, field: Optional[str] = None):
        error_code = f"VALIDATION_ERROR_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=detail,
            error_code=error_code
        )


class UnauthorizedError(APIException):
    """Authentication required."""

    def __init__(self, detail: str = "Not authenticated"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            error_code="UNAUTHORIZED",
            headers={"WWW-Authenticate": "Bearer"},
        )


class ForbiddenError(APIException):
    """Authenticated but not allowed."""

    def __init__(self, detail: str = "Access denied"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=detail,
            error_code="FORBIDDEN"
        )


class WeekLockedError(APIException):
    def __init__(self, week_index: int):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Week {week_index} is locked",
            error_code="WEEK_LOCKED",
            details={"week_index": week_index},
        )


class SessionLockedError(APIException):
    def __init__(self, session_id: Any):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Session {session_id} is locked",
            error_code="SESSION_LOCKED",
            details={"session_id": str(session_id)},
        )


class InvalidDiffError(APIException):
    """Diff failed schema validation."""

    def __init__(self, detail: str, errors: Optional[list] = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
            error_code="INVALID_DIFF",
            details={"errors": errors or []},
        )


class HardSafetyBlockedError(APIException):
    """Diff violates a hard safety rule; carries at most three reasons."""

    MAX_REASONS = 3

    def __init__(self, reasons: Sequence[str]):
        shown = list(reasons)[: self.MAX_REASONS]
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail="Proposal blocked by hard safety checks: " + " ".join(shown),
            error_code="HARD_SAFETY_BLOCKED",
            details={"reasons": shown},
        )


class ProposalConflictError(APIException):
    """Plan changed since the proposal was generated."""

    def __init__(self, session_ids: Sequence[Any]):
        ids = [str(s) for s in session_ids]
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail="Plan changed since this proposal was generated; regenerate or reopen it.",
            error_code="PROPOSAL_CONFLICT",
            details={"session_ids": ids},
        )


class InvalidStatusError(APIException):
    def __init__(self, detail: str, current_status: Optional[str] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
            error_code="INVALID_STATUS",
            details={"status": current_status} if current_status else None,
        )


class UndoNotAvailableError(APIException):
    def __init__(self, proposal_id: Any):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"No undo checkpoint recorded for proposal {proposal_id}",
            error_code="UNDO_NOT_AVAILABLE",
        )


async def api_exception_handler(request: Request, exc: APIException) -> JSONResponse:
    """Render APIException subclasses with their error code."""
    content: Dict[str, Any] = {"detail": exc.detail, "error_code": exc.error_code}
    if exc.details:
        content["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)
