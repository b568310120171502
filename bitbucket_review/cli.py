"""Typer CLI for the Bitbucket review tools."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Annotated

import httpx
import typer

from bitbucket_review.bitbucket_client import (
    BitbucketContext,
    BitbucketCredentials,
    BitbucketInputError,
    BitbucketNotConfiguredError,
    PullRequestRef,
    build_bitbucket_context,
    fetch_pull_request_snapshot,
    get_bitbucket_credentials_with_source,
    parse_repo_full_name,
    validate_token,
)
from bitbucket_review.diff_fetcher import (
    DEFAULT_MAX_TOKENS,
    fetch_pull_request_diff_view,
    fetch_pull_request_file_stats,
)
from bitbucket_review.output import render_file_stats
from bitbucket_review.server import build_server
from bitbucket_review.tools import ToolSession
from bitbucket_review.transport import BitbucketApiError

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

app = typer.Typer(help="Bitbucket pull request diff tools and MCP server.")


def configure_logging(verbose: bool) -> None:
    """Log to stderr; stdout carries the MCP stream."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option(help="Enable debug logging.")] = False,
) -> None:
    """Bitbucket pull request diff tools."""
    configure_logging(verbose)


def _load_credentials() -> BitbucketCredentials:
    try:
        credentials, token_source = get_bitbucket_credentials_with_source()
    except BitbucketNotConfiguredError as error:
        typer.echo(f"Bitbucket configuration missing: {error}", err=True)
        raise typer.Exit(code=1) from error
    typer.echo(f"Token detected in {token_source}.", err=True)
    return credentials


def _resolve_ref(
    credentials: BitbucketCredentials, workspace: str | None, repo: str, pr: int
) -> PullRequestRef:
    """Accept `--repo slug` with a workspace, or `--repo workspace/slug`."""
    try:
        if workspace is None and "/" in repo:
            workspace, repo = parse_repo_full_name(repo)
        workspace = workspace or credentials.workspace
        if not workspace:
            raise BitbucketInputError(
                "Workspace is required. Pass --workspace, use --repo workspace/repo_slug "
                "or set BITBUCKET_WORKSPACE."
            )
        return PullRequestRef(workspace=workspace, repo_slug=repo, pr_id=pr)
    except BitbucketInputError as error:
        raise typer.BadParameter(str(error)) from error


def _fail(prefix: str, error: Exception) -> typer.Exit:
    if isinstance(error, BitbucketApiError):
        typer.echo(f"{prefix}: status={error.status_code} endpoint={error.endpoint}.", err=True)
    else:
        typer.echo(f"{prefix}: network error ({error}).", err=True)
    return typer.Exit(code=1)


@app.command("serve")
def serve_command() -> None:
    """Run the MCP server on stdio."""
    session = ToolSession()
    try:
        credentials, token_source = get_bitbucket_credentials_with_source()
    except BitbucketNotConfiguredError:
        logging.getLogger(__name__).info(
            "No Bitbucket credentials in environment; waiting for configure-bitbucket"
        )
    else:
        logging.getLogger(__name__).info("Using Bitbucket token from %s", token_source)
        session = ToolSession(build_bitbucket_context(credentials))
    build_server(session).run(transport="stdio")


async def _auth_check(context: BitbucketContext, ref: PullRequestRef | None) -> None:
    async with context:
        identity = await validate_token(context=context)
        typer.echo(f"Authenticated as Bitbucket user '{identity.display_name}'.")
        if ref is not None:
            snapshot = await fetch_pull_request_snapshot(context=context, ref=ref)
            typer.echo(
                f"Repository/PR access check passed for "
                f"{ref.workspace}/{ref.repo_slug}#{ref.pr_id} ({snapshot.title})."
            )


@app.command("auth-check")
def auth_check_command(
    workspace: Annotated[
        str | None, typer.Option(help="Workspace used with --repo for the permission check.")
    ] = None,
    repo: Annotated[
        str | None,
        typer.Option(help="Optional repository slug (or workspace/repo_slug) for permission check."),
    ] = None,
    pr: Annotated[
        int | None,
        typer.Option(help="Optional pull request id used with --repo for permission check."),
    ] = None,
    timeout_seconds: Annotated[
        int, typer.Option(help="Bitbucket API timeout in seconds for the validation call.")
    ] = 20,
    trust_env: Annotated[
        bool,
        typer.Option(
            "--trust-env/--no-trust-env",
            help="Use proxy/SSL environment variables from the current shell.",
        ),
    ] = True,
) -> None:
    """Validate Bitbucket credentials and optional PR read access."""
    if (repo is None) != (pr is None):
        raise typer.BadParameter("Provide both --repo and --pr together, or neither.")

    credentials = _load_credentials()
    ref = _resolve_ref(credentials, workspace, repo, pr) if repo and pr is not None else None
    context = build_bitbucket_context(credentials, timeout_seconds, trust_env=trust_env)

    try:
        asyncio.run(_auth_check(context, ref))
    except (BitbucketApiError, httpx.HTTPError) as error:
        raise _fail("Bitbucket auth check failed", error) from error

    typer.echo("Bitbucket token setup is valid.")


@app.command("diff")
def diff_command(
    repo: Annotated[str, typer.Option(help="Repository slug, or workspace/repo_slug.")],
    pr: Annotated[int, typer.Option(help="Pull request id.")],
    workspace: Annotated[str | None, typer.Option(help="Workspace (defaults to env).")] = None,
    file_path: Annotated[str | None, typer.Option(help="Only show this file's diff.")] = None,
    context_lines: Annotated[
        int | None, typer.Option(min=0, max=10, help="Context lines to keep after changes.")
    ] = None,
    ignore_whitespace: Annotated[
        bool, typer.Option(help="Drop whitespace-only added/removed lines.")
    ] = False,
    max_size: Annotated[
        int, typer.Option(min=1000, max=20000, help="Approximate token budget for the diff.")
    ] = DEFAULT_MAX_TOKENS,
) -> None:
    """Print a pull request diff."""
    credentials = _load_credentials()
    ref = _resolve_ref(credentials, workspace, repo, pr)

    async def run() -> str:
        async with build_bitbucket_context(credentials) as context:
            view = await fetch_pull_request_diff_view(
                context=context,
                ref=ref,
                file_path=file_path,
                context_lines=context_lines,
                ignore_whitespace=ignore_whitespace,
                max_size=max_size,
            )
        return view.text

    try:
        typer.echo(asyncio.run(run()))
    except (BitbucketApiError, httpx.HTTPError) as error:
        raise _fail("Diff request failed", error) from error


@app.command("files")
def files_command(
    repo: Annotated[str, typer.Option(help="Repository slug, or workspace/repo_slug.")],
    pr: Annotated[int, typer.Option(help="Pull request id.")],
    workspace: Annotated[str | None, typer.Option(help="Workspace (defaults to env).")] = None,
) -> None:
    """Print the files changed by a pull request."""
    credentials = _load_credentials()
    ref = _resolve_ref(credentials, workspace, repo, pr)

    async def run() -> str:
        async with build_bitbucket_context(credentials) as context:
            result = await fetch_pull_request_file_stats(context=context, ref=ref)
        if result.report is not None:
            return result.report
        return render_file_stats(ref.pr_id, result.stats)

    try:
        typer.echo(asyncio.run(run()))
    except (BitbucketApiError, httpx.HTTPError) as error:
        raise _fail("File listing failed", error) from error


if __name__ == "__main__":
    app()
