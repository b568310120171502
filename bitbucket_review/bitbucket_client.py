"""Bitbucket Cloud API wrapper, credentials and per-endpoint helpers."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import quote

import httpx
from dotenv import load_dotenv

from bitbucket_review.cache import CACHE_TTL_SECONDS, CacheKind, TTLCache, cache_key
from bitbucket_review.diff_tools import ChangeStatus, FileChangeStat
from bitbucket_review.transport import (
    BITBUCKET_API_BASE_URL,
    DEFAULT_TIMEOUT_SECONDS,
    USER_AGENT,
    BitbucketApiError,
    BitbucketTransport,
)

logger = logging.getLogger(__name__)

BITBUCKET_EMAIL_ENV_VAR = "BITBUCKET_EMAIL"
BITBUCKET_API_TOKEN_ENV_VAR = "BITBUCKET_API_TOKEN"
BITBUCKET_APP_PASSWORD_ENV_VAR = "BITBUCKET_APP_PASSWORD"
BITBUCKET_BASE_URL_ENV_VAR = "BITBUCKET_BASE_URL"
BITBUCKET_WORKSPACE_ENV_VAR = "BITBUCKET_WORKSPACE"
FALLBACK_SOURCE_BRANCHES = ("master", "develop", "HEAD")
SEARCH_PREFERRED_BRANCHES = ("main", "master", "develop")
MAX_SEARCH_BRANCHES = 3
MAX_DIFFSTAT_PAGES = 20


class BitbucketNotConfiguredError(RuntimeError):
    """Raised when no Bitbucket credentials have been established."""


class BitbucketInputError(ValueError):
    """Raised when workspace, repository or PR input values are invalid."""


@dataclass(frozen=True, slots=True)
class BitbucketCredentials:
    """Account email plus API token used for HTTP basic auth."""

    email: str
    api_token: str = field(repr=False)
    base_url: str = BITBUCKET_API_BASE_URL
    workspace: str | None = None


@dataclass(frozen=True, slots=True)
class PullRequestRef:
    """Identifies one pull request."""

    workspace: str
    repo_slug: str
    pr_id: int

    def __post_init__(self) -> None:
        validate_repository(self.workspace, self.repo_slug)
        validate_pr_id(self.pr_id)


@dataclass(frozen=True, slots=True)
class PullRequestSnapshot:
    """Pull request metadata needed to resolve its diff."""

    pr_id: int
    title: str
    state: str
    author: str
    description: str
    source_branch: str
    source_commit: str | None
    destination_branch: str
    destination_commit: str | None


@dataclass(frozen=True, slots=True)
class CommitSummary:
    """One commit from a commit listing."""

    hash: str
    message: str
    author: str
    date: str

    @property
    def short_hash(self) -> str:
        return self.hash[:8]

    @property
    def summary(self) -> str:
        first_line = self.message.splitlines()[0] if self.message else ""
        return first_line or "No message"


@dataclass(frozen=True, slots=True)
class TokenValidation:
    """Identity behind a validated API token."""

    display_name: str
    username: str
    uuid: str


@dataclass(slots=True)
class BitbucketContext:
    """Transport and cache threaded explicitly into every operation."""

    transport: BitbucketTransport
    cache: TTLCache = field(default_factory=TTLCache)
    credentials: BitbucketCredentials | None = None

    async def __aenter__(self) -> BitbucketContext:
        self.cache.start_sweeper()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Stop the cache sweeper and close the HTTP client."""
        await self.cache.close()
        await self.transport.aclose()


def validate_pr_id(pr_id: int) -> int:
    """Validate and normalize pull request id input."""
    if isinstance(pr_id, bool) or not isinstance(pr_id, int) or pr_id <= 0:
        raise BitbucketInputError(f"Invalid PR id '{pr_id}'. Expected a positive integer.")
    return pr_id


def validate_repository(workspace: str, repo_slug: str) -> tuple[str, str]:
    """Validate workspace and repository slug input."""
    if not workspace or not workspace.strip():
        raise BitbucketInputError("Invalid workspace ''. Expected a non-empty workspace.")
    if not repo_slug or not repo_slug.strip() or "/" in repo_slug:
        raise BitbucketInputError(
            f"Invalid repository slug '{repo_slug}'. Expected a single path segment."
        )
    return workspace.strip(), repo_slug.strip()


def parse_repo_full_name(repo_full_name: str) -> tuple[str, str]:
    """Parse and validate repository input in workspace/repo_slug format."""
    workspace, separator, repo_slug = repo_full_name.strip().partition("/")
    if not separator or not workspace or not repo_slug or "/" in repo_slug:
        raise BitbucketInputError(
            f"Invalid repo '{repo_full_name}'. Expected format is workspace/repo_slug."
        )
    return workspace, repo_slug


def get_bitbucket_credentials() -> BitbucketCredentials:
    """Read Bitbucket credentials from environment and fail fast if missing."""
    credentials, _source = get_bitbucket_credentials_with_source()
    return credentials


def get_bitbucket_credentials_with_source() -> tuple[BitbucketCredentials, str]:
    """Read credentials and return them with the environment key that held the token."""
    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)

    email = os.getenv(BITBUCKET_EMAIL_ENV_VAR)
    if not email:
        raise BitbucketNotConfiguredError(
            f"Missing Bitbucket account email. Set {BITBUCKET_EMAIL_ENV_VAR}."
        )

    for env_var in (BITBUCKET_API_TOKEN_ENV_VAR, BITBUCKET_APP_PASSWORD_ENV_VAR):
        token = os.getenv(env_var)
        if token:
            credentials = BitbucketCredentials(
                email=email,
                api_token=token,
                base_url=os.getenv(BITBUCKET_BASE_URL_ENV_VAR) or BITBUCKET_API_BASE_URL,
                workspace=os.getenv(BITBUCKET_WORKSPACE_ENV_VAR) or None,
            )
            return credentials, env_var

    message = (
        f"Missing Bitbucket API token. Set {BITBUCKET_API_TOKEN_ENV_VAR} (preferred) "
        f"or {BITBUCKET_APP_PASSWORD_ENV_VAR}."
    )
    raise BitbucketNotConfiguredError(message)


def build_bitbucket_http_client(
    credentials: BitbucketCredentials,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    *,
    trust_env: bool = True,
) -> httpx.AsyncClient:
    """Build an authenticated Bitbucket HTTP client."""
    headers = {
        "Accept": "application/json",
        "User-Agent": USER_AGENT,
    }
    return httpx.AsyncClient(
        base_url=credentials.base_url.rstrip("/"),
        auth=(credentials.email, credentials.api_token),
        headers=headers,
        timeout=timeout_seconds,
        trust_env=trust_env,
    )


def build_bitbucket_context(
    credentials: BitbucketCredentials,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    *,
    trust_env: bool = True,
) -> BitbucketContext:
    """Build a context with a fresh transport and an empty cache."""
    client = build_bitbucket_http_client(credentials, timeout_seconds, trust_env=trust_env)
    return BitbucketContext(
        transport=BitbucketTransport(client),
        cache=TTLCache(),
        credentials=credentials,
    )


def _repository_endpoint(workspace: str, repo_slug: str) -> str:
    return f"/2.0/repositories/{quote(workspace, safe='')}/{quote(repo_slug, safe='')}"


def _pull_request_endpoint(ref: PullRequestRef) -> str:
    return f"{_repository_endpoint(ref.workspace, ref.repo_slug)}/pullrequests/{ref.pr_id}"


def _ensure_mapping(value: object, *, context: str) -> dict[str, Any]:
    """Ensure a response fragment is a JSON object."""
    if not isinstance(value, dict):
        raise BitbucketApiError(
            f"Expected JSON object for {context}.",
            status_code=500,
            endpoint=context,
        )
    return value


def _require_str(payload: dict[str, Any], *, key: str, endpoint: str) -> str:
    """Read a required string field from payload."""
    value = payload.get(key)
    if not isinstance(value, str):
        raise BitbucketApiError(
            f"Expected string field '{key}' in Bitbucket response.",
            status_code=500,
            endpoint=endpoint,
        )
    return value


def _require_object(payload: dict[str, Any], *, key: str, endpoint: str) -> dict[str, Any]:
    """Read a required object field from payload."""
    value = payload.get(key)
    if not isinstance(value, dict):
        raise BitbucketApiError(
            f"Expected object field '{key}' in Bitbucket response.",
            status_code=500,
            endpoint=endpoint,
        )
    return value


def _optional_hash(payload: dict[str, Any]) -> str | None:
    commit = payload.get("commit")
    if isinstance(commit, dict) and isinstance(commit.get("hash"), str) and commit["hash"]:
        return commit["hash"]
    return None


def _display_name(payload: object) -> str:
    if isinstance(payload, dict):
        for key in ("display_name", "nickname", "username"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return "Unknown"


def _page_values(payload: object, *, endpoint: str) -> list[dict[str, Any]]:
    """Return the `values` array of a paginated Bitbucket response."""
    page = _ensure_mapping(payload, context=endpoint)
    values = page.get("values", [])
    if not isinstance(values, list):
        raise BitbucketApiError(
            "Expected 'values' array in Bitbucket response.",
            status_code=500,
            endpoint=endpoint,
        )
    return [value for value in values if isinstance(value, dict)]


def _build_query(*clauses: str | None) -> str | None:
    present = [clause for clause in clauses if clause]
    return " AND ".join(present) if present else None


async def validate_token(*, context: BitbucketContext) -> TokenValidation:
    """Fetch the authenticated user to confirm the token works."""
    email = context.credentials.email if context.credentials else ""
    key = cache_key(CacheKind.TOKEN_VALIDATION, email)
    cached = context.cache.get(key)
    if cached is not None:
        return cached

    endpoint = "/2.0/user"
    payload = _ensure_mapping(await context.transport.get_json(endpoint), context=endpoint)
    result = TokenValidation(
        display_name=_display_name(payload),
        username=str(payload.get("username") or payload.get("nickname") or ""),
        uuid=str(payload.get("uuid") or ""),
    )
    context.cache.set(key, result, CACHE_TTL_SECONDS[CacheKind.TOKEN_VALIDATION])
    return result


async def list_repositories(
    *,
    context: BitbucketContext,
    workspace: str,
    language: str | None = None,
    is_private: bool | None = None,
    query: str | None = None,
    sort: str | None = None,
    page: int | None = None,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """List repositories in a workspace."""
    filters = (language, is_private, query, sort, page, limit)
    key = cache_key(CacheKind.REPOSITORIES, workspace, filters)
    cached = context.cache.get(key)
    if cached is not None:
        return cached

    params: dict[str, Any] = {}
    q = _build_query(
        f'language="{language}"' if language else None,
        f"is_private={str(is_private).lower()}" if is_private is not None else None,
        f'name ~ "{query}"' if query else None,
    )
    if q:
        params["q"] = q
    if sort:
        params["sort"] = sort
    if page:
        params["page"] = page
    if limit:
        params["pagelen"] = limit

    endpoint = f"/2.0/repositories/{quote(workspace, safe='')}"
    repositories = _page_values(
        await context.transport.get_json(endpoint, params=params or None), endpoint=endpoint
    )
    context.cache.set(key, repositories, CACHE_TTL_SECONDS[CacheKind.REPOSITORIES])
    return repositories


async def get_repository(
    *, context: BitbucketContext, workspace: str, repo_slug: str
) -> dict[str, Any]:
    """Fetch one repository's metadata."""
    workspace, repo_slug = validate_repository(workspace, repo_slug)
    key = cache_key(CacheKind.REPOSITORY, workspace, repo_slug)
    cached = context.cache.get(key)
    if cached is not None:
        return cached

    endpoint = _repository_endpoint(workspace, repo_slug)
    repository = _ensure_mapping(await context.transport.get_json(endpoint), context=endpoint)
    context.cache.set(key, repository, CACHE_TTL_SECONDS[CacheKind.REPOSITORY])
    return repository


async def list_pull_requests(
    *,
    context: BitbucketContext,
    workspace: str,
    repo_slug: str,
    state: str | None = None,
    author: str | None = None,
    destination_branch: str | None = None,
    page: int | None = None,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """List pull requests for a repository."""
    workspace, repo_slug = validate_repository(workspace, repo_slug)
    filters = (state, author, destination_branch, page, limit)
    key = cache_key(CacheKind.PULL_REQUESTS, workspace, repo_slug, filters)
    cached = context.cache.get(key)
    if cached is not None:
        return cached

    params: dict[str, Any] = {}
    if state:
        params["state"] = state
    q = _build_query(
        f'author.username="{author}"' if author else None,
        f'destination.branch.name="{destination_branch}"' if destination_branch else None,
    )
    if q:
        params["q"] = q
    if page:
        params["page"] = page
    if limit:
        params["pagelen"] = limit

    endpoint = f"{_repository_endpoint(workspace, repo_slug)}/pullrequests"
    pull_requests = _page_values(
        await context.transport.get_json(endpoint, params=params or None), endpoint=endpoint
    )
    context.cache.set(key, pull_requests, CACHE_TTL_SECONDS[CacheKind.PULL_REQUESTS])
    return pull_requests


async def fetch_pull_request_payload(
    *, context: BitbucketContext, ref: PullRequestRef
) -> dict[str, Any]:
    """Fetch raw pull request metadata, served from cache while fresh."""
    key = cache_key(CacheKind.PULL_REQUEST, ref.workspace, ref.repo_slug, ref.pr_id)
    cached = context.cache.get(key)
    if cached is not None:
        return cached

    endpoint = _pull_request_endpoint(ref)
    payload = _ensure_mapping(await context.transport.get_json(endpoint), context=endpoint)
    context.cache.set(key, payload, CACHE_TTL_SECONDS[CacheKind.PULL_REQUEST])
    return payload


def parse_pull_request_snapshot(payload: dict[str, Any], *, endpoint: str) -> PullRequestSnapshot:
    """Normalize a pull request payload into the fields diff resolution needs."""
    source = _require_object(payload, key="source", endpoint=endpoint)
    destination = _require_object(payload, key="destination", endpoint=endpoint)
    source_branch = _require_object(source, key="branch", endpoint=endpoint)
    destination_branch = _require_object(destination, key="branch", endpoint=endpoint)

    pr_id = payload.get("id")
    if not isinstance(pr_id, int) or isinstance(pr_id, bool):
        raise BitbucketApiError(
            "Expected integer field 'id' in Bitbucket response.",
            status_code=500,
            endpoint=endpoint,
        )

    description = payload.get("description")
    if description is None:
        description = ""
    elif not isinstance(description, str):
        raise BitbucketApiError(
            "Expected 'description' to be a string or null in Bitbucket response.",
            status_code=500,
            endpoint=endpoint,
        )

    return PullRequestSnapshot(
        pr_id=pr_id,
        title=_require_str(payload, key="title", endpoint=endpoint),
        state=_require_str(payload, key="state", endpoint=endpoint),
        author=_display_name(payload.get("author")),
        description=description,
        source_branch=_require_str(source_branch, key="name", endpoint=endpoint),
        source_commit=_optional_hash(source),
        destination_branch=_require_str(destination_branch, key="name", endpoint=endpoint),
        destination_commit=_optional_hash(destination),
    )


async def fetch_pull_request_snapshot(
    *, context: BitbucketContext, ref: PullRequestRef
) -> PullRequestSnapshot:
    """Fetch pull request metadata and normalize it."""
    payload = await fetch_pull_request_payload(context=context, ref=ref)
    return parse_pull_request_snapshot(payload, endpoint=_pull_request_endpoint(ref))


def invalidate_pull_request(context: BitbucketContext, ref: PullRequestRef) -> int:
    """Drop cached metadata for one pull request."""
    return context.cache.invalidate(CacheKind.PULL_REQUEST, ref.workspace, ref.repo_slug, ref.pr_id)


async def create_pull_request(
    *,
    context: BitbucketContext,
    workspace: str,
    repo_slug: str,
    title: str,
    source: str,
    destination: str,
    description: str | None = None,
    reviewers: list[str] | None = None,
) -> dict[str, Any]:
    """Create a pull request and invalidate cached pull request listings."""
    workspace, repo_slug = validate_repository(workspace, repo_slug)
    payload = {
        "title": title,
        "description": description or "",
        "source": {"branch": {"name": source}},
        "destination": {"branch": {"name": destination}},
        "reviewers": [{"username": username} for username in reviewers or []],
    }
    endpoint = f"{_repository_endpoint(workspace, repo_slug)}/pullrequests"
    created = _ensure_mapping(await context.transport.post_json(endpoint, payload), context=endpoint)
    context.cache.invalidate(CacheKind.PULL_REQUESTS, workspace, repo_slug)
    return created


async def list_issues(
    *,
    context: BitbucketContext,
    workspace: str,
    repo_slug: str,
    state: str | None = None,
    kind: str | None = None,
    priority: str | None = None,
    assignee: str | None = None,
    page: int | None = None,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """List issues; a 404 means the issue tracker is disabled."""
    workspace, repo_slug = validate_repository(workspace, repo_slug)
    params: dict[str, Any] = {}
    q = _build_query(
        f'state="{state}"' if state else None,
        f'kind="{kind}"' if kind else None,
        f'priority="{priority}"' if priority else None,
        f'assignee.username="{assignee}"' if assignee else None,
    )
    if q:
        params["q"] = q
    if page:
        params["page"] = page
    if limit:
        params["pagelen"] = limit

    endpoint = f"{_repository_endpoint(workspace, repo_slug)}/issues"
    try:
        payload = await context.transport.get_json(endpoint, params=params or None)
    except BitbucketApiError as error:
        if error.status_code == 404:
            raise BitbucketApiError(
                str(error),
                status_code=404,
                endpoint=endpoint,
                upstream_message=(
                    "Repository has no issue tracker enabled. "
                    "Issue tracking is disabled for this repository."
                ),
            ) from error
        raise
    return _page_values(payload, endpoint=endpoint)


async def get_issue(
    *, context: BitbucketContext, workspace: str, repo_slug: str, issue_id: int
) -> dict[str, Any]:
    """Fetch one issue."""
    workspace, repo_slug = validate_repository(workspace, repo_slug)
    endpoint = f"{_repository_endpoint(workspace, repo_slug)}/issues/{issue_id}"
    return _ensure_mapping(await context.transport.get_json(endpoint), context=endpoint)


async def create_issue(
    *,
    context: BitbucketContext,
    workspace: str,
    repo_slug: str,
    title: str,
    kind: str,
    priority: str,
    content: str | None = None,
    assignee: str | None = None,
) -> dict[str, Any]:
    """Create an issue."""
    workspace, repo_slug = validate_repository(workspace, repo_slug)
    payload: dict[str, Any] = {"title": title, "kind": kind, "priority": priority}
    if content:
        payload["content"] = {"raw": content}
    if assignee:
        payload["assignee"] = {"username": assignee}
    endpoint = f"{_repository_endpoint(workspace, repo_slug)}/issues"
    return _ensure_mapping(await context.transport.post_json(endpoint, payload), context=endpoint)


def _parse_commit(row: dict[str, Any], *, endpoint: str) -> CommitSummary:
    author = row.get("author")
    author_raw = author.get("raw") if isinstance(author, dict) else None
    message = row.get("message")
    date = row.get("date")
    return CommitSummary(
        hash=_require_str(row, key="hash", endpoint=endpoint),
        message=message if isinstance(message, str) else "",
        author=author_raw if isinstance(author_raw, str) else _display_name(author),
        date=date if isinstance(date, str) else "",
    )


async def list_commits(
    *,
    context: BitbucketContext,
    workspace: str,
    repo_slug: str,
    branch: str | None = None,
    limit: int = 50,
) -> tuple[CommitSummary, ...]:
    """List recent commits, optionally restricted to one branch."""
    workspace, repo_slug = validate_repository(workspace, repo_slug)
    key = cache_key(CacheKind.COMMITS, workspace, repo_slug, branch or "main", limit)
    cached = context.cache.get(key)
    if cached is not None:
        return cached

    params: dict[str, Any] = {"pagelen": limit}
    if branch:
        params["include"] = branch
    endpoint = f"{_repository_endpoint(workspace, repo_slug)}/commits"
    rows = _page_values(await context.transport.get_json(endpoint, params=params), endpoint=endpoint)
    commits = tuple(_parse_commit(row, endpoint=endpoint) for row in rows)
    context.cache.set(key, commits, CACHE_TTL_SECONDS[CacheKind.COMMITS])
    return commits


async def list_branches(
    *, context: BitbucketContext, workspace: str, repo_slug: str
) -> list[dict[str, Any]]:
    """List branches of a repository."""
    workspace, repo_slug = validate_repository(workspace, repo_slug)
    key = cache_key(CacheKind.BRANCHES, workspace, repo_slug)
    cached = context.cache.get(key)
    if cached is not None:
        return cached

    endpoint = f"{_repository_endpoint(workspace, repo_slug)}/refs/branches"
    branches = _page_values(await context.transport.get_json(endpoint), endpoint=endpoint)
    context.cache.set(key, branches, CACHE_TTL_SECONDS[CacheKind.BRANCHES])
    return branches


async def get_file_content(
    *,
    context: BitbucketContext,
    workspace: str,
    repo_slug: str,
    path: str,
    branch: str = "main",
) -> tuple[str, str]:
    """Fetch raw file content; on 404 retry common branch names.

    Returns the content together with the branch it was found on.
    """
    workspace, repo_slug = validate_repository(workspace, repo_slug)
    normalized_path = path.lstrip("/")
    if not normalized_path:
        raise BitbucketInputError("Invalid file path ''. Expected a non-empty repository path.")

    base = f"{_repository_endpoint(workspace, repo_slug)}/src"
    quoted_path = quote(normalized_path, safe="/")
    try:
        content = await context.transport.get_text(f"{base}/{quote(branch, safe='')}/{quoted_path}")
        return content, branch
    except BitbucketApiError as error:
        if error.status_code != 404:
            raise
        not_found = error

    for fallback_branch in FALLBACK_SOURCE_BRANCHES:
        if fallback_branch == branch:
            continue
        try:
            content = await context.transport.get_text(f"{base}/{fallback_branch}/{quoted_path}")
        except BitbucketApiError as error:
            logger.debug("File %s not on branch %s: %s", normalized_path, fallback_branch, error)
            continue
        return content, fallback_branch

    raise BitbucketApiError(
        str(not_found),
        status_code=404,
        endpoint=not_found.endpoint,
        upstream_message=(
            f"File '{normalized_path}' not found on branch '{branch}' or common branches "
            "(master, develop, HEAD). Please check the file path and branch name."
        ),
    ) from not_found


async def search_code(
    *, context: BitbucketContext, workspace: str, repo_slug: str, query: str
) -> list[dict[str, Any]]:
    """Match file names and paths at the root listing of up to three branches."""
    workspace, repo_slug = validate_repository(workspace, repo_slug)
    branch_names = [
        branch["name"]
        for branch in await list_branches(context=context, workspace=workspace, repo_slug=repo_slug)
        if isinstance(branch.get("name"), str)
    ]
    candidates = list(SEARCH_PREFERRED_BRANCHES) + [
        name for name in branch_names if name not in SEARCH_PREFERRED_BRANCHES
    ]
    needle = query.lower()

    for branch in candidates[:MAX_SEARCH_BRANCHES]:
        endpoint = f"{_repository_endpoint(workspace, repo_slug)}/src/{quote(branch, safe='')}/"
        try:
            entries = _page_values(await context.transport.get_json(endpoint), endpoint=endpoint)
        except BitbucketApiError as error:
            logger.debug("Source listing unavailable on %s: %s", branch, error)
            continue

        matches: list[dict[str, Any]] = []
        for entry in entries:
            entry_path = entry.get("path") if isinstance(entry.get("path"), str) else ""
            name = entry_path.rsplit("/", maxsplit=1)[-1]
            name_match = needle in name.lower()
            if name_match or needle in entry_path.lower():
                matches.append(
                    {
                        **entry,
                        "name": name,
                        "match_type": "filename" if name_match else "path",
                        "branch": branch,
                    }
                )
        if matches:
            return matches

    return []


async def fetch_pull_request_diff_text(*, context: BitbucketContext, ref: PullRequestRef) -> str:
    """Fetch the direct diff for a pull request (may 404 for non-participants)."""
    return await context.transport.get_text(f"{_pull_request_endpoint(ref)}/diff")


async def fetch_pull_request_commits(
    *, context: BitbucketContext, ref: PullRequestRef
) -> tuple[CommitSummary, ...]:
    """Fetch the first page of a pull request's commits, newest first."""
    endpoint = f"{_pull_request_endpoint(ref)}/commits"
    rows = _page_values(await context.transport.get_json(endpoint), endpoint=endpoint)
    return tuple(_parse_commit(row, endpoint=endpoint) for row in rows)


async def fetch_commit_diff(
    *,
    context: BitbucketContext,
    workspace: str,
    repo_slug: str,
    commit_hash: str,
    path: str | None = None,
) -> str:
    """Fetch a single commit's diff, optionally filtered to one path."""
    endpoint = f"{_repository_endpoint(workspace, repo_slug)}/diff/{quote(commit_hash, safe='')}"
    return await context.transport.get_text(endpoint, params={"path": path} if path else None)


async def fetch_commit_range_diff(
    *,
    context: BitbucketContext,
    workspace: str,
    repo_slug: str,
    base_hash: str,
    head_hash: str,
    path: str | None = None,
) -> str:
    """Fetch a two-dot diff between two commit hashes."""
    revisions = f"{quote(base_hash, safe='')}..{quote(head_hash, safe='')}"
    endpoint = f"{_repository_endpoint(workspace, repo_slug)}/diff/{revisions}"
    return await context.transport.get_text(endpoint, params={"path": path} if path else None)


async def fetch_branch_compare_diff(
    *,
    context: BitbucketContext,
    workspace: str,
    repo_slug: str,
    destination_branch: str,
    source_branch: str,
) -> str:
    """Fetch a three-dot diff between the destination and source branches."""
    revisions = f"{quote(destination_branch, safe='')}...{quote(source_branch, safe='')}"
    endpoint = f"{_repository_endpoint(workspace, repo_slug)}/diff/{revisions}"
    return await context.transport.get_text(endpoint)


def _parse_diffstat_row(row: dict[str, Any]) -> FileChangeStat:
    old = row.get("old")
    new = row.get("new")
    old_path = old.get("path") if isinstance(old, dict) else None
    new_path = new.get("path") if isinstance(new, dict) else None
    try:
        status = ChangeStatus(row.get("status"))
    except ValueError:
        status = ChangeStatus.MODIFIED
    lines_added = row.get("lines_added")
    lines_removed = row.get("lines_removed")
    return FileChangeStat(
        old_path=old_path if isinstance(old_path, str) else None,
        new_path=new_path if isinstance(new_path, str) else None,
        status=status,
        lines_added=lines_added if isinstance(lines_added, int) else 0,
        lines_removed=lines_removed if isinstance(lines_removed, int) else 0,
    )


async def fetch_pull_request_diffstat(
    *, context: BitbucketContext, ref: PullRequestRef
) -> tuple[FileChangeStat, ...]:
    """Fetch structured per-file stats, following pagination links."""
    endpoint = f"{_pull_request_endpoint(ref)}/diffstat"
    stats: list[FileChangeStat] = []
    next_url: str | None = endpoint
    pages = 0
    while next_url and pages < MAX_DIFFSTAT_PAGES:
        payload = _ensure_mapping(await context.transport.get_json(next_url), context=endpoint)
        stats.extend(_parse_diffstat_row(row) for row in _page_values(payload, endpoint=endpoint))
        link = payload.get("next")
        next_url = link if isinstance(link, str) and link else None
        pages += 1
    return tuple(stats)
