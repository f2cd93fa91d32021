"""Custom exceptions and error handlers"""
from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Optional
import traceback
from keyhub.utils.logger import logger


class KeyHubError(Exception):
    """Base class for every typed error the service returns to callers.

    ``code`` is the stable machine-readable kind, ``status_code`` the HTTP
    mapping used by the exception handler, ``message`` the only text that
    ever reaches the caller.
    """

    code = "INTERNAL_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        if message:
            self.message = message
        super().__init__(self.message)


# ==================== AUTHENTICATION ====================

class AuthError(KeyHubError):
    """Raised when a credential or session cannot be accepted"""
    code = "UNAUTHORIZED"
    status_code = status.HTTP_401_UNAUTHORIZED
    message = "Unauthorized"


class MissingCredential(AuthError):
    code = "MISSING_API_KEY"
    message = "API key is required"


class InvalidCredential(AuthError):
    code = "INVALID_API_KEY"
    message = "Invalid API key"


class InactiveOrNotAdmin(AuthError):
    """Key exists but is switched off or lacks the admin role"""
    code = "INVALID_ADMIN"
    status_code = status.HTTP_403_FORBIDDEN
    message = "Invalid admin credentials"


class InactiveKey(InactiveOrNotAdmin):
    code = "INACTIVE_API_KEY"
    message = "API key is inactive"


class WrongKeyType(InactiveOrNotAdmin):
    code = "NOT_ADMIN_KEY"
    message = "Admin API key required"


class KeyNotFound(AuthError):
    """Token identity no longer resolves to a stored key"""
    code = "API_KEY_NOT_FOUND"
    message = "API key for this session no longer exists"


class SubscriptionExpired(AuthError):
    code = "SUBSCRIPTION_EXPIRED"
    status_code = status.HTTP_403_FORBIDDEN
    message = "Subscription expired"


class MissingToken(AuthError):
    code = "MISSING_TOKEN"
    message = "Authorization token is required"


class InvalidToken(AuthError):
    code = "INVALID_TOKEN"
    message = "Invalid or expired token"


class TokenMalformed(InvalidToken):
    code = "TOKEN_MALFORMED"
    message = "Malformed token"


class TokenSignatureInvalid(InvalidToken):
    code = "TOKEN_SIGNATURE_INVALID"
    message = "Invalid token signature"


class TokenExpired(InvalidToken):
    code = "TOKEN_EXPIRED"
    message = "Token expired"


class TokenRevoked(AuthError):
    code = "TOKEN_REVOKED"
    message = "Token has been revoked"


class WrongTokenType(AuthError):
    code = "INSUFFICIENT_PERMISSIONS"
    status_code = status.HTTP_403_FORBIDDEN
    message = "Admin token required"


class InvalidRefreshToken(AuthError):
    code = "INVALID_REFRESH_TOKEN"
    message = "Invalid or expired refresh token"


# ==================== SUBSCRIPTIONS ====================

class SubscriptionError(KeyHubError):
    """Raised when a lifecycle transition is not allowed"""
    code = "SUBSCRIPTION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Subscription operation failed"


class SubscriptionAlreadyActive(SubscriptionError):
    code = "SUBSCRIPTION_EXISTS"
    message = "Subscription already exists for this API key"


class SubscriptionNotFound(SubscriptionError):
    code = "NO_SUBSCRIPTION"
    message = "No subscription found for this API key"


class SubscriptionNotActive(SubscriptionError):
    code = "SUBSCRIPTION_NOT_ACTIVE"
    message = "Subscription is not active"


# ==================== GENERIC ====================

class NotFound(KeyHubError):
    code = "API_KEY_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    message = "API key not found"


class ValidationFailed(KeyHubError):
    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Invalid request"

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None):
        if code:
            self.code = code
        super().__init__(message)


class StorageFailure(KeyHubError):
    """Raised when the persistence layer fails; never swallowed on primary paths"""
    code = "STORAGE_ERROR"
    message = "Storage operation failed"


class LockTimeout(KeyHubError):
    code = "LOCK_TIMEOUT"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    message = "Resource is busy, please retry"


class RateLimitExceeded(KeyHubError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    message = "Rate limit exceeded"

    def __init__(self, retry_after: int, limit: int, message: Optional[str] = None,
                 code: Optional[str] = None):
        self.retry_after = retry_after
        self.limit = limit
        if code:
            self.code = code
        super().__init__(message)


# ==================== HANDLERS ====================

async def keyhub_exception_handler(request: Request, exc: KeyHubError):
    """Render typed service errors"""
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.__cause__ or exc.message}")
    else:
        logger.warning(f"{exc.code} on {request.method} {request.url.path}")

    headers = {}
    if isinstance(exc, AuthError) and exc.status_code == status.HTTP_401_UNAUTHORIZED:
        headers["WWW-Authenticate"] = "Bearer"
    if isinstance(exc, RateLimitExceeded):
        headers["Retry-After"] = str(exc.retry_after)
        headers["X-RateLimit-Limit"] = str(exc.limit)
        headers["X-RateLimit-Remaining"] = "0"

    content = {
        "error": exc.message,
        "code": exc.code,
        "path": str(request.url.path)
    }
    if isinstance(exc, RateLimitExceeded):
        content["retryAfter"] = exc.retry_after

    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors"""
    logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation Error",
            "code": "VALIDATION_ERROR",
            "detail": [
                {"loc": list(err.get("loc", [])), "msg": err.get("msg"), "type": err.get("type")}
                for err in exc.errors()
            ],
            "path": str(request.url.path)
        }
    )


async def generic_exception_handler(request: Request, exc: Exception):
    """Handle generic exceptions"""
    logger.error(f"Unhandled exception on {request.url.path}: {str(exc)}\n{traceback.format_exc()}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "code": "INTERNAL_ERROR",
            "path": str(request.url.path)
        }
    )
