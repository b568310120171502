"""Tool registry, session state and dispatch."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
from pydantic import ValidationError

from bitbucket_review.bitbucket_client import (
    BitbucketContext,
    BitbucketCredentials,
    BitbucketInputError,
    BitbucketNotConfiguredError,
    PullRequestRef,
    TokenValidation,
    build_bitbucket_context,
    create_issue,
    create_pull_request,
    fetch_pull_request_payload,
    get_file_content,
    get_issue,
    get_repository,
    list_branches,
    list_commits,
    list_issues,
    list_pull_requests,
    list_repositories,
    search_code,
    validate_token,
)
from bitbucket_review.diff_fetcher import (
    RelevanceCheck,
    fetch_pull_request_diff_view,
    fetch_pull_request_file_stats,
)
from bitbucket_review.errors import ErrorContext, describe_error, format_error_for_user
from bitbucket_review.output import (
    render_branch_list,
    render_code_search_results,
    render_commit_list,
    render_configured,
    render_file_content,
    render_file_stats,
    render_issue,
    render_issue_created,
    render_issue_list,
    render_pull_request,
    render_pull_request_created,
    render_pull_request_diff,
    render_pull_request_list,
    render_repository,
    render_repository_list,
)
from bitbucket_review.schema import (
    CommitsInput,
    ConfigureInput,
    CreateIssueInput,
    CreatePullRequestInput,
    FileContentInput,
    IssueInput,
    ListIssuesInput,
    ListPullRequestsInput,
    ListRepositoriesInput,
    PullRequestDiffInput,
    PullRequestInput,
    RepositoryInput,
    SearchCodeInput,
    ToolInput,
)
from bitbucket_review.transport import BitbucketApiError

logger = logging.getLogger(__name__)

NOT_CONFIGURED_MESSAGE = (
    "Bitbucket is not configured. Call configure-bitbucket first, "
    "or set BITBUCKET_EMAIL and BITBUCKET_API_TOKEN before starting the server."
)

InputT = TypeVar("InputT", bound=ToolInput)
ContextFactory = Callable[[BitbucketCredentials], BitbucketContext]


class ToolInputError(ValueError):
    """Raised when tool arguments fail validation."""

    def __init__(self, tool_name: str, errors: list[tuple[str, str]]) -> None:
        super().__init__(f"Invalid input for {tool_name}.")
        self.tool_name = tool_name
        self.errors = errors

    @classmethod
    def from_validation_error(cls, tool_name: str, error: ValidationError) -> ToolInputError:
        pairs = [
            (".".join(str(part) for part in item["loc"]) or "input", item["msg"])
            for item in error.errors()
        ]
        return cls(tool_name, pairs)

    def render(self) -> str:
        lines = [f"**Error:** {self}"]
        lines.extend(f"- {field}: {message}" for field, message in self.errors)
        return "\n".join(lines)


class ToolSession:
    """Holds the active Bitbucket context for the lifetime of a server."""

    def __init__(
        self,
        context: BitbucketContext | None = None,
        *,
        context_factory: ContextFactory = build_bitbucket_context,
        relevance_check: RelevanceCheck | None = None,
    ) -> None:
        self._context = context
        self._context_factory = context_factory
        self.relevance_check = relevance_check

    @property
    def configured(self) -> bool:
        return self._context is not None

    @property
    def default_workspace(self) -> str | None:
        if self._context is None or self._context.credentials is None:
            return None
        return self._context.credentials.workspace

    def require_context(self) -> BitbucketContext:
        """Return the active context or fail with a not-configured error."""
        if self._context is None:
            raise BitbucketNotConfiguredError(NOT_CONFIGURED_MESSAGE)
        return self._context

    async def configure(self, credentials: BitbucketCredentials) -> TokenValidation | None:
        """Replace the active context and validate the new token.

        A failed validation is logged; the new context stays active.
        """
        if self._context is not None:
            await self._context.aclose()
        context = self._context_factory(credentials)
        context.cache.start_sweeper()
        self._context = context

        try:
            identity = await validate_token(context=context)
        except (BitbucketApiError, httpx.HTTPError) as error:
            logger.warning("Token validation failed for %s: %s", credentials.email, error)
            return None
        logger.info("Authenticated to Bitbucket as %s", identity.display_name)
        return identity

    async def aclose(self) -> None:
        if self._context is not None:
            await self._context.aclose()
            self._context = None


ToolHandler = Callable[[ToolSession, Any], Awaitable[str]]
TypedHandler = Callable[[ToolSession, InputT], Awaitable[str]]


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """One callable tool."""

    name: str
    description: str
    operation: str
    input_model: type[ToolInput]
    handler: ToolHandler


TOOLS: dict[str, ToolSpec] = {}


def register_tool(
    name: str,
    *,
    description: str,
    operation: str,
    input_model: type[InputT],
) -> Callable[[TypedHandler[InputT]], TypedHandler[InputT]]:
    def decorator(handler: TypedHandler[InputT]) -> TypedHandler[InputT]:
        TOOLS[name] = ToolSpec(
            name=name,
            description=description,
            operation=operation,
            input_model=input_model,
            handler=handler,
        )
        return handler

    return decorator


def _error_details(params: ToolInput | None) -> dict[str, Any]:
    if params is None:
        return {}
    return {
        key: value
        for key, value in params.model_dump(include={"pr_id", "issue_id", "path", "branch"}).items()
        if value is not None
    }


async def call_tool(session: ToolSession, name: str, arguments: Mapping[str, Any] | None) -> str:
    """Validate arguments, run a tool and render failures as text."""
    spec = TOOLS.get(name)
    if spec is None:
        return f"**Error:** Unknown tool: {name}"

    try:
        params = spec.input_model.model_validate(dict(arguments or {}))
    except ValidationError as error:
        return ToolInputError.from_validation_error(name, error).render()

    try:
        return await spec.handler(session, params)
    except BitbucketNotConfiguredError as error:
        return f"**Error:** {error}"
    except (BitbucketApiError, BitbucketInputError, httpx.HTTPError) as error:
        tool_error = describe_error(
            error,
            ErrorContext(
                operation=spec.operation,
                workspace=getattr(params, "workspace", None),
                repository=getattr(params, "repo_slug", None),
                details=_error_details(params),
            ),
        )
        logger.warning("Tool %s failed: %s", name, tool_error)
        return format_error_for_user(tool_error)


def _pull_request_ref(params: PullRequestInput) -> PullRequestRef:
    return PullRequestRef(workspace=params.workspace, repo_slug=params.repo_slug, pr_id=params.pr_id)


@register_tool(
    "configure-bitbucket",
    description="Configure Bitbucket credentials (account email plus API token).",
    operation="Configure Bitbucket",
    input_model=ConfigureInput,
)
async def configure_bitbucket(session: ToolSession, params: ConfigureInput) -> str:
    credentials = BitbucketCredentials(
        email=params.email,
        api_token=params.api_token,
        base_url=params.base_url,
        workspace=params.workspace,
    )
    identity = await session.configure(credentials)
    return render_configured(credentials, identity)


@register_tool(
    "list-repositories",
    description="List repositories in a workspace with optional filters.",
    operation="List repositories",
    input_model=ListRepositoriesInput,
)
async def list_repositories_tool(session: ToolSession, params: ListRepositoriesInput) -> str:
    context = session.require_context()
    workspace = params.workspace or session.default_workspace
    if not workspace:
        raise BitbucketInputError(
            "Workspace is required. Pass workspace or configure a default workspace."
        )
    repositories = await list_repositories(
        context=context,
        workspace=workspace,
        language=params.language,
        is_private=params.is_private,
        query=params.query,
        sort=params.sort,
        page=params.page,
        limit=params.limit,
    )
    return render_repository_list(repositories)


@register_tool(
    "get-repository",
    description="Get details for one repository.",
    operation="Get repository",
    input_model=RepositoryInput,
)
async def get_repository_tool(session: ToolSession, params: RepositoryInput) -> str:
    repository = await get_repository(
        context=session.require_context(),
        workspace=params.workspace,
        repo_slug=params.repo_slug,
    )
    return render_repository(repository)


@register_tool(
    "list-pull-requests",
    description="List pull requests for a repository.",
    operation="List pull requests",
    input_model=ListPullRequestsInput,
)
async def list_pull_requests_tool(session: ToolSession, params: ListPullRequestsInput) -> str:
    pull_requests = await list_pull_requests(
        context=session.require_context(),
        workspace=params.workspace,
        repo_slug=params.repo_slug,
        state=params.state,
        author=params.author,
        destination_branch=params.destination_branch,
        page=params.page,
        limit=params.limit,
    )
    return render_pull_request_list(pull_requests)


@register_tool(
    "get-pull-request",
    description="Get details for one pull request.",
    operation="Get pull request",
    input_model=PullRequestInput,
)
async def get_pull_request_tool(session: ToolSession, params: PullRequestInput) -> str:
    payload = await fetch_pull_request_payload(
        context=session.require_context(), ref=_pull_request_ref(params)
    )
    return render_pull_request(payload)


@register_tool(
    "create-pull-request",
    description="Create a pull request.",
    operation="Create pull request",
    input_model=CreatePullRequestInput,
)
async def create_pull_request_tool(session: ToolSession, params: CreatePullRequestInput) -> str:
    created = await create_pull_request(
        context=session.require_context(),
        workspace=params.workspace,
        repo_slug=params.repo_slug,
        title=params.title,
        source=params.source,
        destination=params.destination,
        description=params.description,
        reviewers=params.reviewers,
    )
    return render_pull_request_created(created)


@register_tool(
    "get-pull-request-diff",
    description=(
        "Get the code changes of a pull request. Supports a single file, "
        "context trimming, whitespace filtering and a token budget."
    ),
    operation="Get pull request diff",
    input_model=PullRequestDiffInput,
)
async def get_pull_request_diff_tool(session: ToolSession, params: PullRequestDiffInput) -> str:
    view = await fetch_pull_request_diff_view(
        context=session.require_context(),
        ref=_pull_request_ref(params),
        file_path=params.file_path,
        context_lines=params.context_lines,
        ignore_whitespace=params.ignore_whitespace,
        max_size=params.max_size,
        relevance_check=session.relevance_check,
    )
    if view.truncated or view.access_limited:
        return view.text
    return render_pull_request_diff(params.pr_id, view.text)


@register_tool(
    "get-pull-request-files",
    description="List files changed in a pull request with line counts.",
    operation="Get pull request files",
    input_model=PullRequestInput,
)
async def get_pull_request_files_tool(session: ToolSession, params: PullRequestInput) -> str:
    result = await fetch_pull_request_file_stats(
        context=session.require_context(),
        ref=_pull_request_ref(params),
        relevance_check=session.relevance_check,
    )
    if result.report is not None:
        return result.report
    return render_file_stats(params.pr_id, result.stats)


@register_tool(
    "list-issues",
    description="List issues for a repository.",
    operation="List issues",
    input_model=ListIssuesInput,
)
async def list_issues_tool(session: ToolSession, params: ListIssuesInput) -> str:
    issues = await list_issues(
        context=session.require_context(),
        workspace=params.workspace,
        repo_slug=params.repo_slug,
        state=params.state,
        kind=params.kind,
        priority=params.priority,
        assignee=params.assignee,
        page=params.page,
        limit=params.limit,
    )
    return render_issue_list(issues)


@register_tool(
    "get-issue",
    description="Get details for one issue.",
    operation="Get issue",
    input_model=IssueInput,
)
async def get_issue_tool(session: ToolSession, params: IssueInput) -> str:
    issue = await get_issue(
        context=session.require_context(),
        workspace=params.workspace,
        repo_slug=params.repo_slug,
        issue_id=params.issue_id,
    )
    return render_issue(issue)


@register_tool(
    "create-issue",
    description="Create an issue.",
    operation="Create issue",
    input_model=CreateIssueInput,
)
async def create_issue_tool(session: ToolSession, params: CreateIssueInput) -> str:
    issue = await create_issue(
        context=session.require_context(),
        workspace=params.workspace,
        repo_slug=params.repo_slug,
        title=params.title,
        kind=params.kind,
        priority=params.priority,
        content=params.content,
        assignee=params.assignee,
    )
    return render_issue_created(issue)


@register_tool(
    "get-commits",
    description="List recent commits, optionally for one branch.",
    operation="Get commits",
    input_model=CommitsInput,
)
async def get_commits_tool(session: ToolSession, params: CommitsInput) -> str:
    commits = await list_commits(
        context=session.require_context(),
        workspace=params.workspace,
        repo_slug=params.repo_slug,
        branch=params.branch,
        limit=params.limit,
    )
    return render_commit_list(commits, params.branch)


@register_tool(
    "list-branches",
    description="List branches of a repository.",
    operation="List branches",
    input_model=RepositoryInput,
)
async def list_branches_tool(session: ToolSession, params: RepositoryInput) -> str:
    branches = await list_branches(
        context=session.require_context(),
        workspace=params.workspace,
        repo_slug=params.repo_slug,
    )
    return render_branch_list(branches)


@register_tool(
    "get-file-content",
    description="Get raw file content from a branch.",
    operation="Get file content",
    input_model=FileContentInput,
)
async def get_file_content_tool(session: ToolSession, params: FileContentInput) -> str:
    content, branch = await get_file_content(
        context=session.require_context(),
        workspace=params.workspace,
        repo_slug=params.repo_slug,
        path=params.path,
        branch=params.branch,
    )
    return render_file_content(params.path, content, branch)


@register_tool(
    "search-code",
    description="Search file names and paths in a repository.",
    operation="Search code",
    input_model=SearchCodeInput,
)
async def search_code_tool(session: ToolSession, params: SearchCodeInput) -> str:
    results = await search_code(
        context=session.require_context(),
        workspace=params.workspace,
        repo_slug=params.repo_slug,
        query=params.query,
    )
    return render_code_search_results(results, params.query)
