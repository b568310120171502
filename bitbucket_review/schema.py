"""Input contracts for every tool."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PullRequestState(StrEnum):
    """Pull request states accepted by list filters."""

    OPEN = "OPEN"
    MERGED = "MERGED"
    DECLINED = "DECLINED"


class IssueState(StrEnum):
    """Issue tracker states."""

    NEW = "new"
    OPEN = "open"
    RESOLVED = "resolved"
    ON_HOLD = "on hold"
    INVALID = "invalid"
    DUPLICATE = "duplicate"
    WONTFIX = "wontfix"
    CLOSED = "closed"


class IssueKind(StrEnum):
    """Issue kinds."""

    BUG = "bug"
    ENHANCEMENT = "enhancement"
    PROPOSAL = "proposal"
    TASK = "task"


class IssuePriority(StrEnum):
    """Issue priorities."""

    TRIVIAL = "trivial"
    MINOR = "minor"
    MAJOR = "major"
    CRITICAL = "critical"
    BLOCKER = "blocker"


class RepositorySort(StrEnum):
    """Repository listing sort keys."""

    CREATED_ON = "created_on"
    UPDATED_ON = "updated_on"
    NAME = "name"


class ToolInput(BaseModel):
    """Base for tool inputs; unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid")


class ConfigureInput(ToolInput):
    base_url: str = Field(default="https://api.bitbucket.org", min_length=1)
    email: str = Field(min_length=3)
    api_token: str = Field(min_length=1)
    workspace: str | None = None

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, value: str) -> str:
        """Require an absolute http(s) URL."""
        if not value.startswith(("https://", "http://")):
            raise ValueError("base_url must be an absolute http(s) URL.")
        return value.rstrip("/")

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        """Check the basic shape of an email address."""
        local, separator, domain = value.partition("@")
        if not separator or not local or "." not in domain:
            raise ValueError("email must be a valid email address.")
        return value


class RepositoryInput(ToolInput):
    workspace: str = Field(min_length=1)
    repo_slug: str = Field(min_length=1)


class ListRepositoriesInput(ToolInput):
    workspace: str | None = None
    language: str | None = None
    is_private: bool | None = None
    query: str | None = Field(default=None, max_length=100)
    sort: RepositorySort | None = None
    page: int | None = Field(default=None, ge=1, le=100)
    limit: int | None = Field(default=None, ge=1, le=100)


class ListPullRequestsInput(RepositoryInput):
    state: PullRequestState | None = None
    author: str | None = None
    destination_branch: str | None = None
    page: int | None = Field(default=None, ge=1, le=100)
    limit: int | None = Field(default=None, ge=1, le=100)


class PullRequestInput(RepositoryInput):
    pr_id: int = Field(ge=1)


class PullRequestDiffInput(PullRequestInput):
    """Diff request options; `max_size` is an approximate token budget."""

    file_path: str | None = None
    context_lines: int | None = Field(default=None, ge=0, le=10)
    ignore_whitespace: bool = False
    max_size: int = Field(default=20000, ge=1000, le=20000)


class CreatePullRequestInput(RepositoryInput):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=65535)
    source: str = Field(min_length=1)
    destination: str = Field(min_length=1)
    reviewers: list[str] = Field(default_factory=list)


class ListIssuesInput(RepositoryInput):
    state: IssueState | None = None
    kind: IssueKind | None = None
    priority: IssuePriority | None = None
    assignee: str | None = None
    page: int | None = Field(default=None, ge=1, le=100)
    limit: int | None = Field(default=None, ge=1, le=100)


class IssueInput(RepositoryInput):
    issue_id: int = Field(ge=1)


class CreateIssueInput(RepositoryInput):
    title: str = Field(min_length=1, max_length=255)
    content: str | None = Field(default=None, max_length=65535)
    kind: IssueKind
    priority: IssuePriority
    assignee: str | None = None


class CommitsInput(RepositoryInput):
    branch: str | None = None
    limit: int = Field(default=50, ge=1, le=100)


class FileContentInput(RepositoryInput):
    path: str = Field(min_length=1)
    branch: str = Field(default="main", min_length=1)


class SearchCodeInput(RepositoryInput):
    query: str = Field(min_length=1, max_length=100)
