"""Error taxonomy and error handling framework for repoman."""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError


# Surfaced as a status flag by the service layer, never raised
DIRTY_WORKING_TREE_CONFLICT = "DIRTY_WORKING_TREE_CONFLICT"


class ErrorCategory(Enum):
    """Categories of errors for structured error handling."""
    TRANSPORT = "transport"
    PUSH = "push"
    WORKSPACE = "workspace"
    FILESYSTEM = "filesystem"
    REPOSITORY = "repository"
    VALIDATION = "validation"


class RepositoryError(Exception):
    """Base class for every failure a repository operation can report."""

    category = ErrorCategory.REPOSITORY
    default_code = "REPOSITORY_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code


class TransportError(RepositoryError):
    """Network or authentication failure during clone, fetch or push."""

    category = ErrorCategory.TRANSPORT
    default_code = "TRANSPORT_ERROR"


class PushRejected(RepositoryError):
    """The remote refused the pushed ref (e.g. non-fast-forward)."""

    category = ErrorCategory.PUSH
    default_code = "PUSH_REJECTED"


class MissingSourceError(RepositoryError):
    """The subfolder to copy into the workspace does not exist."""

    category = ErrorCategory.WORKSPACE
    default_code = "MISSING_SOURCE"


class FilesystemError(RepositoryError):
    """Copy, delete or hash I/O failure (e.g. a locked file)."""

    category = ErrorCategory.FILESYSTEM
    default_code = "FILESYSTEM_ERROR"


class JobAlreadyRunning(RepositoryError):
    """Another job holds the working tree lock."""

    default_code = "JOB_ALREADY_RUNNING"


_TRANSPORT_PATTERNS = (
    "could not resolve host",
    "connection refused",
    "connection timed out",
    "network is unreachable",
    "no route to host",
    "temporary failure in name resolution",
    "operation timed out",
    "authentication failed",
    "permission denied",
    "could not read from remote repository",
    "repository not found",
    "does not appear to be a git repository",
    "unable to access",
    "does not exist",
    "invalid credentials",
)

# HTTP 401/403 as whole numbers only
_HTTP_AUTH_STATUS = re.compile(r"\b40[13]\b")

_PUSH_REJECTED_PATTERNS = (
    "[rejected]",
    "[remote rejected]",
    "non-fast-forward",
    "failed to push some refs",
    "fetch first",
    "protected branch",
)


def _command_text(error: GitCommandError) -> str:
    parts = [str(error.stderr or ""), str(error.stdout or ""), str(error)]
    return " ".join(parts).lower()


def classify_git_error(error: Exception, operation: str = "git") -> RepositoryError:
    """
    Convert an exception raised by a git operation into the repoman taxonomy.

    Args:
        error: Exception raised by GitPython or the filesystem
        operation: Name of the operation, used as message prefix

    Returns:
        A RepositoryError subclass instance describing the failure
    """
    if isinstance(error, RepositoryError):
        return error

    if isinstance(error, GitCommandError):
        text = _command_text(error)
        detail = (str(error.stderr or "").strip() or str(error)).replace("stderr: ", "").strip(" '")

        if any(pattern in text for pattern in _PUSH_REJECTED_PATTERNS):
            return PushRejected(f"{operation} rejected by remote: {detail}")
        if any(pattern in text for pattern in _TRANSPORT_PATTERNS) or _HTTP_AUTH_STATUS.search(text):
            return TransportError(f"{operation} failed to reach remote: {detail}")
        return RepositoryError(f"{operation} failed: {detail}", "GIT_COMMAND_FAILED")

    if isinstance(error, (InvalidGitRepositoryError, NoSuchPathError)):
        return RepositoryError(f"{operation} failed: not a git repository: {error}", "INVALID_GIT_REPOSITORY")

    if isinstance(error, OSError):
        return FilesystemError(f"{operation} failed: {error}")

    return RepositoryError(f"Unexpected error during {operation}: {error}", "UNEXPECTED_ERROR")


@dataclass
class ErrorResponse:
    """Standardized error response format for the tool surface."""
    error: str
    error_code: str
    message: str
    timestamp: str
    category: str
    context: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert error response to dictionary format."""
        result = {
            "error": self.error,
            "error_code": self.error_code,
            "message": self.message,
            "timestamp": self.timestamp,
            "category": self.category
        }
        if self.context:
            result["context"] = self.context
        return result


class ErrorHandler:
    """Turns exceptions into ErrorResponse objects and logs them."""

    def __init__(self):
        self.logger = logging.getLogger('repoman.error_handler')

    def to_response(self, error: Exception, context: Dict[str, Any] = None) -> ErrorResponse:
        """Handle a repository operation error gracefully."""
        context = context or {}

        if isinstance(error, RepositoryError):
            repo_error = error
        elif isinstance(error, ValueError):
            repo_error = RepositoryError(str(error), "VALIDATION_ERROR")
            repo_error.category = ErrorCategory.VALIDATION
        else:
            repo_error = classify_git_error(error, context.get('operation', 'operation'))

        response = ErrorResponse(
            error="Repository operation failed",
            error_code=repo_error.error_code,
            message=repo_error.message,
            timestamp=datetime.now().isoformat(),
            category=repo_error.category.value,
            context=context
        )

        self.logger.warning(
            f"Repository error: {repo_error.message}",
            extra={
                'operation': context.get('operation', 'repository_error'),
                'error_code': repo_error.error_code,
                'repository': context.get('repository')
            }
        )

        return response

    def conflict_response(self, name: str, status: str) -> ErrorResponse:
        """Response for an update refused because local changes exist."""
        return ErrorResponse(
            error="Local changes detected",
            error_code=DIRTY_WORKING_TREE_CONFLICT,
            message=f"{name} has local changes. Updating will permanently delete them; retry with force to continue.",
            timestamp=datetime.now().isoformat(),
            category=ErrorCategory.VALIDATION.value,
            context={"repository": name, "status": status}
        )


# Initialize global error handler
error_handler = ErrorHandler()
