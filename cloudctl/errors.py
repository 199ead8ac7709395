"""
Error taxonomy for the cloud controller.

Gateways raise these; worker threads capture them into completion events and
the main loop decides what to do with them. Nothing here should ever escape
the main loop.
"""
from botocore.exceptions import (
    ClientError,
    CredentialRetrievalError,
    NoCredentialsError,
    TokenRetrievalError,
    UnauthorizedSSOTokenError,
)


class CloudControllerError(Exception):
    """Base class for all controller errors."""


# ---- Auth ----

class AuthError(CloudControllerError):
    pass


class ProfileNotFound(AuthError):
    def __init__(self, profile: str):
        super().__init__(f"Profile not found: {profile}")
        self.profile = profile


class ActivationFailed(AuthError):
    def __init__(self, profile: str, reason: str):
        super().__init__(f"Failed to activate profile {profile}: {reason}")
        self.profile = profile
        self.reason = reason


class LoginFailed(AuthError):
    """Login subprocess failed. `output` is the captured text, unmodified."""

    def __init__(self, profile: str, exit_code: int, output: str):
        super().__init__(f"Login failed for {profile} (exit {exit_code})")
        self.profile = profile
        self.exit_code = exit_code
        self.output = output


# ---- API ----

class ApiError(CloudControllerError):
    def __init__(self, message: str, code: str = ""):
        super().__init__(message)
        self.code = code


class Unauthorized(ApiError):
    pass


class NotFound(ApiError):
    pass


class Throttled(ApiError):
    pass


class UnknownApiError(ApiError):
    pass


# ---- Scheduler / session ----

class SchedulerError(CloudControllerError):
    pass


class AlreadyRunning(SchedulerError):
    def __init__(self, key):
        super().__init__(f"Operation already running: {key}")
        self.key = key


class SessionError(CloudControllerError):
    pass


class InvalidTransition(SessionError):
    def __init__(self, source, target):
        super().__init__(f"Invalid session transition: {source} -> {target}")
        self.source = source
        self.target = target


# ---- botocore translation ----

UNAUTHORIZED_CODES = {
    "ExpiredToken",
    "ExpiredTokenException",
    "InvalidToken",
    "InvalidClientTokenId",
    "UnrecognizedClientException",
    "AuthFailure",
    "RequestExpired",
    "UnauthorizedException",
}

THROTTLED_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
}

# Matched against lowercased messages when the code alone is not conclusive
EXPIRED_MARKERS = (
    "expiredtoken",
    "expired token",
    "token is expired",
    "token has expired",
    "credentials have expired",
    "the security token included in the request is expired",
    "request has expired",
)


def is_session_expired_message(message: str) -> bool:
    """Check whether an error message describes expired/invalid credentials."""
    lowered = message.lower()
    return any(marker in lowered for marker in EXPIRED_MARKERS)


def translate_botocore_error(error: Exception) -> ApiError:
    """
    Map a botocore/boto3 exception onto the ApiError taxonomy.

    Args:
        error: exception raised by a boto3 client call

    Returns:
        The matching ApiError subclass instance (never raises).
    """
    if isinstance(error, (NoCredentialsError, TokenRetrievalError,
                          CredentialRetrievalError, UnauthorizedSSOTokenError)):
        return Unauthorized(str(error), code=type(error).__name__)

    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "")
        message = str(error)
        if code in UNAUTHORIZED_CODES or is_session_expired_message(message):
            return Unauthorized(message, code=code)
        if code in THROTTLED_CODES:
            return Throttled(message, code=code)
        if ("NotFound" in code or code.startswith("InvalidInstanceID")
                or code == "ResourceNotFoundException"):
            return NotFound(message, code=code)
        return UnknownApiError(message, code=code)

    if is_session_expired_message(str(error)):
        return Unauthorized(str(error))
    return UnknownApiError(str(error))
