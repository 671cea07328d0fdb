from typing import Any, Dict, Optional


class AppException(Exception):
    # None means "unclassified": the retry predicate falls back to keywords.
    retryable: Optional[bool] = None

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        error_code: str = "BUSINESS_ERROR",
        details: Optional[Dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}
        if retryable is not None:
            self.retryable = retryable
        super().__init__(self.message)

    @property
    def code(self) -> str:
        return self.error_code


class ConfigurationError(RuntimeError):
    """Raised at startup when required settings are absent."""


# --- Validation -------------------------------------------------------------

class ValidationError(AppException):
    def __init__(self, message: str, error_code: str = "VALIDATION_ERROR", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=422, error_code=error_code, details=details, retryable=False)


class InvalidFileError(ValidationError):
    def __init__(self, message: str = "Invalid file provided"):
        super().__init__(message, error_code="INVALID_FILE")


class FileTooLargeError(ValidationError):
    def __init__(self, message: str = "File too large. Maximum size is 50MB"):
        super().__init__(message, error_code="FILE_TOO_LARGE")


class ExtractionError(ValidationError):
    def __init__(self, message: str = "Could not extract readable text from PDF."):
        super().__init__(message, error_code="PDF_TEXT_EXTRACTION_FAILED")


class PreviewError(AppException):
    def __init__(self, message: str = "Failed to convert PDF to image"):
        super().__init__(message=message, status_code=500, error_code="PREVIEW_FAILED", retryable=False)


# --- Transport --------------------------------------------------------------

class TransportError(AppException):
    def __init__(self, message: str, error_code: str = "CONNECTION_FAILED", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=503, error_code=error_code, details=details, retryable=True)


class OperationTimeoutError(TransportError):
    """Named to avoid shadowing the built-in TimeoutError."""
    def __init__(self, message: str = "Operation timed out"):
        super().__init__(message, error_code="OPERATION_TIMEOUT")
        self.status_code = 504


# --- Auth -------------------------------------------------------------------

class AuthenticationError(AppException):
    def __init__(self, message: str = "Could not validate credentials"):
        super().__init__(
            message=message,
            status_code=401,
            error_code="AUTH_FAILED",
            retryable=False,
        )


class AccessDeniedError(AppException):
    """Custom permission error. Named AccessDeniedError to avoid shadowing Python's built-in PermissionError."""
    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(
            message=message,
            status_code=403,
            error_code="PERMISSION_DENIED",
            retryable=False,
        )


# --- Remote resources -------------------------------------------------------

class NotFoundError(AppException):
    def __init__(self, message: str, error_code: str = "NOT_FOUND"):
        super().__init__(message=message, status_code=404, error_code=error_code, retryable=False)


class ResumeNotFoundError(NotFoundError):
    def __init__(self, message: str = "Resume not found"):
        super().__init__(message, error_code="RESUME_NOT_FOUND")


class FileNotFoundInStorageError(NotFoundError):
    def __init__(self, message: str = "File not found"):
        super().__init__(message, error_code="FILE_NOT_FOUND")


class ConflictError(AppException):
    def __init__(self, message: str, error_code: str = "FILE_EXISTS"):
        super().__init__(message=message, status_code=409, error_code=error_code, retryable=False)


class StorageError(AppException):
    """Blob storage failure; retryable unless the cause says otherwise."""
    def __init__(self, message: str, error_code: str = "STORAGE_FAILED", retryable: Optional[bool] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=502, error_code=error_code, details=details, retryable=retryable)


class DatabaseError(AppException):
    def __init__(self, message: str, error_code: str = "DB_ERROR", retryable: Optional[bool] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=502, error_code=error_code, details=details, retryable=retryable)


# --- AI ---------------------------------------------------------------------

class AIError(AppException):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=503,
            error_code="AI_SERVICE_UNAVAILABLE",
            details=details,
            retryable=True,
        )


class AIResponseError(AppException):
    """Unparsable output may be regenerated; a parsed object with the wrong shape is final."""
    def __init__(self, message: str = "Invalid response structure from AI service", retryable: bool = False):
        super().__init__(
            message=message,
            status_code=502,
            error_code="AI_INVALID_RESPONSE",
            retryable=retryable,
        )


class AIKillSwitchError(AppException):
    def __init__(self):
        super().__init__(
            message="AI services are currently offline for maintenance.",
            status_code=503,
            error_code="AI_KILL_SWITCH_ACTIVE",
            retryable=False,
        )


# --- Upload workflow --------------------------------------------------------

class UploadCancelledError(AppException):
    def __init__(self, message: str = "Upload cancelled"):
        super().__init__(message=message, status_code=409, error_code="UPLOAD_CANCELLED", retryable=False)


class UploadInProgressError(ConflictError):
    def __init__(self, message: str = "An upload is already in progress."):
        super().__init__(message, error_code="UPLOAD_IN_PROGRESS")


class InvalidTransitionError(AppException):
    def __init__(self, current: str, target: str):
        super().__init__(
            message=f"Illegal upload state transition {current} -> {target}",
            status_code=500,
            error_code="INVALID_STATE_TRANSITION",
            retryable=False,
        )
