"""Error enrichment: operation context plus status-keyed remediation hints."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx

from bitbucket_review.transport import BitbucketApiError

AUTH_SUGGESTIONS = (
    "Verify your API token is correct and not expired",
    "Check that your email matches your Atlassian account",
    "Ensure the API token has required scopes: Account:Read, Repositories:Read, Pull requests:Read",
    "Create a new API token at https://id.atlassian.com/manage-profile/security/api-tokens",
)
FORBIDDEN_SUGGESTIONS = (
    "Check if your API token has sufficient permissions",
    "Verify you have access to the specified workspace/repository",
    "Ensure the API token includes required scopes for this operation",
    "Contact your workspace administrator if access is restricted",
)
REPOSITORY_NOT_FOUND_SUGGESTIONS = (
    "Verify the workspace and repository names are correct",
    "Check if the repository exists and is accessible",
    "Ensure you have read access to the repository",
)
PULL_REQUEST_NOT_FOUND_SUGGESTIONS = (
    "Verify the pull request ID is correct",
    "Check if the pull request exists in the specified repository",
    "Ensure the repository has pull requests enabled",
)
ISSUE_NOT_FOUND_SUGGESTIONS = (
    "Check if the issue tracker is enabled for this repository",
    "Verify the issue ID is correct",
    "Ensure you have access to view issues",
)
NOT_FOUND_SUGGESTIONS = (
    "Double-check all provided identifiers (workspace, repository, etc.)",
    "Verify the resource exists and is accessible",
)
RATE_LIMIT_SUGGESTIONS = (
    "You have exceeded the API rate limit",
    "Wait a few minutes before retrying",
    "Reduce the number of parallel requests",
)
SERVER_ERROR_SUGGESTIONS = (
    "Bitbucket API is experiencing issues",
    "Try again in a few minutes",
    "Check the Bitbucket status page for known issues",
)
DEFAULT_SUGGESTIONS = (
    "Check the Bitbucket API documentation for this endpoint",
    "Verify all required parameters are provided",
    "Try again with different parameters if applicable",
)
GENERIC_SUGGESTIONS = (
    "Check your network connection",
    "Verify all input parameters are correct",
    "Try the operation again",
)


@dataclass(frozen=True, slots=True)
class ErrorContext:
    """Where a failure happened."""

    operation: str
    workspace: str | None = None
    repository: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


class BitbucketToolError(RuntimeError):
    """Failure enriched with context and remediation suggestions."""

    def __init__(
        self,
        message: str,
        *,
        context: ErrorContext,
        suggestions: tuple[str, ...] = (),
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.context = context
        self.suggestions = suggestions
        self.status_code = status_code


def _not_found_suggestions(operation: str) -> tuple[str, ...]:
    lowered = operation.lower()
    if "issue" in lowered:
        return ISSUE_NOT_FOUND_SUGGESTIONS
    if "pull request" in lowered or "pull-request" in lowered:
        return PULL_REQUEST_NOT_FOUND_SUGGESTIONS
    if "repositor" in lowered:
        return REPOSITORY_NOT_FOUND_SUGGESTIONS
    return NOT_FOUND_SUGGESTIONS


def suggestions_for_status(status_code: int | None, operation: str) -> tuple[str, ...]:
    """Map an HTTP status to remediation hints."""
    if status_code == 401:
        return AUTH_SUGGESTIONS
    if status_code == 403:
        return FORBIDDEN_SUGGESTIONS
    if status_code == 404:
        return _not_found_suggestions(operation)
    if status_code == 429:
        return RATE_LIMIT_SUGGESTIONS
    if status_code is not None and status_code >= 500:
        return SERVER_ERROR_SUGGESTIONS
    return DEFAULT_SUGGESTIONS


def _location(context: ErrorContext) -> str:
    parts = [part for part in (context.workspace, context.repository) if part]
    return f" ({'/'.join(parts)})" if parts else ""


def describe_error(error: Exception, context: ErrorContext) -> BitbucketToolError:
    """Wrap any failure in a BitbucketToolError carrying context and hints."""
    if isinstance(error, BitbucketToolError):
        return error
    if isinstance(error, BitbucketApiError):
        return BitbucketToolError(
            f"{context.operation}{_location(context)}: {error.upstream_message}",
            context=context,
            suggestions=suggestions_for_status(error.status_code, context.operation),
            status_code=error.status_code,
        )
    if isinstance(error, httpx.HTTPError):
        return BitbucketToolError(
            f"{context.operation}{_location(context)}: {error}",
            context=context,
            suggestions=GENERIC_SUGGESTIONS,
        )
    return BitbucketToolError(
        f"{context.operation}: {error}",
        context=context,
        suggestions=GENERIC_SUGGESTIONS,
    )


def format_error_for_user(error: BitbucketToolError) -> str:
    """Render an enriched error as Markdown text."""
    lines = [f"**Error:** {error}"]
    if error.context.details:
        lines.append("")
        lines.append("**Context:**")
        lines.extend(f"- {key}: {value}" for key, value in error.context.details.items())
    if error.suggestions:
        lines.append("")
        lines.append("**Suggestions:**")
        lines.extend(
            f"{index}. {suggestion}" for index, suggestion in enumerate(error.suggestions, start=1)
        )
    return "\n".join(lines)
