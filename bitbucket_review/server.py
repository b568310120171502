"""MCP stdio server exposing the Bitbucket tools."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP

from bitbucket_review.tools import TOOLS, ToolSession, call_tool

logger = logging.getLogger(__name__)

SERVER_NAME = "bitbucket-review-tools"


def _present(**arguments: Any) -> dict[str, Any]:
    """Drop unset optional arguments so input defaults apply."""
    return {key: value for key, value in arguments.items() if value is not None}


def build_server(session: ToolSession) -> FastMCP:
    """Create a FastMCP server whose tools dispatch through `session`."""

    @asynccontextmanager
    async def lifespan(_server: FastMCP) -> AsyncIterator[None]:
        if session.configured:
            session.require_context().cache.start_sweeper()
        logger.info("Bitbucket MCP server started (configured=%s)", session.configured)
        try:
            yield
        finally:
            await session.aclose()

    mcp = FastMCP(SERVER_NAME, lifespan=lifespan)

    def describe(name: str) -> str:
        return TOOLS[name].description

    @mcp.tool(name="configure-bitbucket", description=describe("configure-bitbucket"))
    async def configure_bitbucket(
        email: str,
        api_token: str,
        base_url: str | None = None,
        workspace: str | None = None,
    ) -> str:
        return await call_tool(
            session,
            "configure-bitbucket",
            _present(email=email, api_token=api_token, base_url=base_url, workspace=workspace),
        )

    @mcp.tool(name="list-repositories", description=describe("list-repositories"))
    async def list_repositories(
        workspace: str | None = None,
        language: str | None = None,
        is_private: bool | None = None,
        query: str | None = None,
        sort: str | None = None,
        page: int | None = None,
        limit: int | None = None,
    ) -> str:
        return await call_tool(
            session,
            "list-repositories",
            _present(
                workspace=workspace,
                language=language,
                is_private=is_private,
                query=query,
                sort=sort,
                page=page,
                limit=limit,
            ),
        )

    @mcp.tool(name="get-repository", description=describe("get-repository"))
    async def get_repository(workspace: str, repo_slug: str) -> str:
        return await call_tool(
            session, "get-repository", _present(workspace=workspace, repo_slug=repo_slug)
        )

    @mcp.tool(name="list-pull-requests", description=describe("list-pull-requests"))
    async def list_pull_requests(
        workspace: str,
        repo_slug: str,
        state: str | None = None,
        author: str | None = None,
        destination_branch: str | None = None,
        page: int | None = None,
        limit: int | None = None,
    ) -> str:
        return await call_tool(
            session,
            "list-pull-requests",
            _present(
                workspace=workspace,
                repo_slug=repo_slug,
                state=state,
                author=author,
                destination_branch=destination_branch,
                page=page,
                limit=limit,
            ),
        )

    @mcp.tool(name="get-pull-request", description=describe("get-pull-request"))
    async def get_pull_request(workspace: str, repo_slug: str, pr_id: int) -> str:
        return await call_tool(
            session,
            "get-pull-request",
            _present(workspace=workspace, repo_slug=repo_slug, pr_id=pr_id),
        )

    @mcp.tool(name="create-pull-request", description=describe("create-pull-request"))
    async def create_pull_request(
        workspace: str,
        repo_slug: str,
        title: str,
        source: str,
        destination: str,
        description: str | None = None,
        reviewers: list[str] | None = None,
    ) -> str:
        return await call_tool(
            session,
            "create-pull-request",
            _present(
                workspace=workspace,
                repo_slug=repo_slug,
                title=title,
                source=source,
                destination=destination,
                description=description,
                reviewers=reviewers,
            ),
        )

    @mcp.tool(name="get-pull-request-diff", description=describe("get-pull-request-diff"))
    async def get_pull_request_diff(
        workspace: str,
        repo_slug: str,
        pr_id: int,
        file_path: str | None = None,
        context_lines: int | None = None,
        ignore_whitespace: bool | None = None,
        max_size: int | None = None,
    ) -> str:
        return await call_tool(
            session,
            "get-pull-request-diff",
            _present(
                workspace=workspace,
                repo_slug=repo_slug,
                pr_id=pr_id,
                file_path=file_path,
                context_lines=context_lines,
                ignore_whitespace=ignore_whitespace,
                max_size=max_size,
            ),
        )

    @mcp.tool(name="get-pull-request-files", description=describe("get-pull-request-files"))
    async def get_pull_request_files(workspace: str, repo_slug: str, pr_id: int) -> str:
        return await call_tool(
            session,
            "get-pull-request-files",
            _present(workspace=workspace, repo_slug=repo_slug, pr_id=pr_id),
        )

    @mcp.tool(name="list-issues", description=describe("list-issues"))
    async def list_issues(
        workspace: str,
        repo_slug: str,
        state: str | None = None,
        kind: str | None = None,
        priority: str | None = None,
        assignee: str | None = None,
        page: int | None = None,
        limit: int | None = None,
    ) -> str:
        return await call_tool(
            session,
            "list-issues",
            _present(
                workspace=workspace,
                repo_slug=repo_slug,
                state=state,
                kind=kind,
                priority=priority,
                assignee=assignee,
                page=page,
                limit=limit,
            ),
        )

    @mcp.tool(name="get-issue", description=describe("get-issue"))
    async def get_issue(workspace: str, repo_slug: str, issue_id: int) -> str:
        return await call_tool(
            session,
            "get-issue",
            _present(workspace=workspace, repo_slug=repo_slug, issue_id=issue_id),
        )

    @mcp.tool(name="create-issue", description=describe("create-issue"))
    async def create_issue(
        workspace: str,
        repo_slug: str,
        title: str,
        kind: str,
        priority: str,
        content: str | None = None,
        assignee: str | None = None,
    ) -> str:
        return await call_tool(
            session,
            "create-issue",
            _present(
                workspace=workspace,
                repo_slug=repo_slug,
                title=title,
                kind=kind,
                priority=priority,
                content=content,
                assignee=assignee,
            ),
        )

    @mcp.tool(name="get-commits", description=describe("get-commits"))
    async def get_commits(
        workspace: str,
        repo_slug: str,
        branch: str | None = None,
        limit: int | None = None,
    ) -> str:
        return await call_tool(
            session,
            "get-commits",
            _present(workspace=workspace, repo_slug=repo_slug, branch=branch, limit=limit),
        )

    @mcp.tool(name="list-branches", description=describe("list-branches"))
    async def list_branches(workspace: str, repo_slug: str) -> str:
        return await call_tool(
            session, "list-branches", _present(workspace=workspace, repo_slug=repo_slug)
        )

    @mcp.tool(name="get-file-content", description=describe("get-file-content"))
    async def get_file_content(
        workspace: str,
        repo_slug: str,
        path: str,
        branch: str | None = None,
    ) -> str:
        return await call_tool(
            session,
            "get-file-content",
            _present(workspace=workspace, repo_slug=repo_slug, path=path, branch=branch),
        )

    @mcp.tool(name="search-code", description=describe("search-code"))
    async def search_code(workspace: str, repo_slug: str, query: str) -> str:
        return await call_tool(
            session,
            "search-code",
            _present(workspace=workspace, repo_slug=repo_slug, query=query),
        )

    return mcp
