# ============================================================================
# ERRORS - Exception taxonomy and exit codes
# ============================================================================

from typing import Optional

# Exit codes
EXIT_SUCCESS = 0
EXIT_GENERAL_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_AUTH_ERROR = 3
EXIT_PERMISSION_ERROR = 4
EXIT_NOT_FOUND = 5
EXIT_PREREQUISITE_ERROR = 6
EXIT_API_ERROR = 7
EXIT_INTERRUPTED = 130


class PpvnetError(Exception):
    """Base class for every error raised by ppvnet."""

    exit_code = EXIT_GENERAL_ERROR


class ConfigError(PpvnetError):
    """Missing or invalid configuration, or bad command-line arguments."""

    exit_code = EXIT_CONFIG_ERROR


class PrerequisiteError(PpvnetError):
    """A required external tool (az, azd) is not installed."""

    exit_code = EXIT_PREREQUISITE_ERROR


class AuthError(PpvnetError):
    """Token acquisition failed or the signed-in context is wrong."""

    exit_code = EXIT_AUTH_ERROR


class CommandError(PpvnetError):
    """Subprocess command error."""

    def __init__(self, cmd: list[str], returncode: int, stdout: str, stderr: str, hint: Optional[str] = None):
        self.cmd = cmd
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.hint = hint
        message = stderr.strip() or stdout.strip() or f"Command failed with exit code {returncode}"
        if hint:
            message = f"{message}\n{hint}"
        super().__init__(message)


class ApiError(PpvnetError):
    """Non-2xx response from a REST API."""

    exit_code = EXIT_API_ERROR

    def __init__(self, operation: str, url: str, status: Optional[int], body: str = ""):
        self.operation = operation
        self.url = url
        self.status = status
        self.body = body
        detail = f"{operation} failed (HTTP {status})" if status is not None else f"{operation} failed"
        if body:
            detail = f"{detail}: {body[:500]}"
        super().__init__(f"{detail} [{url}]")


class NotFoundError(ApiError):
    exit_code = EXIT_NOT_FOUND


class ConflictError(ApiError):
    pass


class PermissionDeniedError(ApiError):
    exit_code = EXIT_PERMISSION_ERROR


class GenericAPIError(ApiError):
    pass


class OperationTimeoutError(PpvnetError):
    """A long-running operation did not reach a terminal state in time.

    The operation may still complete on the server side.
    """

    exit_code = EXIT_API_ERROR


def error_for_status(operation: str, url: str, status: int, body: str = "") -> PpvnetError:
    """Builds the typed error matching an HTTP status code."""
    if status == 401:
        return AuthError(f"{operation} rejected the bearer token (HTTP 401) [{url}]")
    if status == 403:
        return PermissionDeniedError(operation, url, status, body)
    if status == 404:
        return NotFoundError(operation, url, status, body)
    if status == 409:
        return ConflictError(operation, url, status, body)
    return GenericAPIError(operation, url, status, body)


def exit_code_for(error: BaseException) -> int:
    if isinstance(error, KeyboardInterrupt):
        return EXIT_INTERRUPTED
    return getattr(error, "exit_code", EXIT_GENERAL_ERROR)
