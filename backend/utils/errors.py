from fastapi import HTTPException, status

# =====================================================
# CORE ERROR TAXONOMY
# =====================================================
# Raised synchronously from mutations and surfaced verbatim
# to the caller through FastAPI's HTTPException handling.


class CoreError(HTTPException):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "CORE_ERROR"

    def __init__(self, detail: str):
        super().__init__(status_code=self.status_code, detail=detail)

    def __str__(self):
        return self.detail


class NotFoundError(CoreError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class IllegalTransitionError(CoreError):
    status_code = status.HTTP_409_CONFLICT
    code = "ILLEGAL_TRANSITION"


class ConflictError(CoreError):
    status_code = status.HTTP_409_CONFLICT
    code = "CONFLICT"


class ValidationFailedError(CoreError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION"


class PermissionDeniedError(CoreError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "PERMISSION_DENIED"
