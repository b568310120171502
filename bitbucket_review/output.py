"""Markdown rendering for tool results."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from bitbucket_review.bitbucket_client import (
    BitbucketCredentials,
    CommitSummary,
    PullRequestSnapshot,
    TokenValidation,
)
from bitbucket_review.diff_tools import ChangeStatus, FileChangeStat

TOO_LARGE_LISTED_FILES = 10
TOO_LARGE_TOP_FILES = 5
STATUS_MARKERS = {
    ChangeStatus.ADDED: "[A]",
    ChangeStatus.REMOVED: "[D]",
    ChangeStatus.MODIFIED: "[M]",
    ChangeStatus.RENAMED: "[R]",
}


def _format_date(value: object) -> str:
    if not isinstance(value, str) or not value:
        return "Unknown"
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        return value


def _name(payload: object, default: str = "Unknown") -> str:
    if isinstance(payload, dict):
        for key in ("display_name", "nickname", "username", "name"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return default


def _nested(payload: dict[str, Any], *keys: str) -> Any:
    value: Any = payload
    for key in keys:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def _clone_links(repository: dict[str, Any]) -> list[dict[str, Any]]:
    links = _nested(repository, "links", "clone")
    if not isinstance(links, list):
        return []
    return [link for link in links if isinstance(link, dict)]


def render_repository_list(repositories: Sequence[dict[str, Any]]) -> str:
    """Render a repository listing."""
    if not repositories:
        return "No repositories found matching the criteria."

    lines = [f"# Repositories ({len(repositories)} found)"]
    for repository in repositories:
        https_link = next(
            (link.get("href") for link in _clone_links(repository) if link.get("name") == "https"),
            None,
        )
        visibility = "private" if repository.get("is_private") else "public"
        lines.append("")
        lines.append(f"**{repository.get('name', 'unknown')}** ({visibility})")
        lines.append(f"- Description: {repository.get('description') or 'No description'}")
        lines.append(f"- Language: {repository.get('language') or 'Not specified'}")
        lines.append(f"- Updated: {_format_date(repository.get('updated_on'))}")
        lines.append(f"- Clone: {https_link or 'N/A'}")
    return "\n".join(lines)


def render_repository(repository: dict[str, Any]) -> str:
    """Render a single repository."""
    visibility = "private" if repository.get("is_private") else "public"
    lines = [
        f"# {repository.get('name', 'unknown')} ({visibility})",
        "",
        f"**Full Name:** {repository.get('full_name', 'unknown')}",
        f"**Description:** {repository.get('description') or 'No description'}",
        f"**Language:** {repository.get('language') or 'Not specified'}",
        f"**Created:** {_format_date(repository.get('created_on'))}",
        f"**Updated:** {_format_date(repository.get('updated_on'))}",
        "",
        "**Clone URLs:**",
    ]
    links = _clone_links(repository)
    if not links:
        lines.append("Not available")
    lines.extend(f"- {link.get('name')}: {link.get('href')}" for link in links)
    return "\n".join(lines)


def _participants(pull_request: dict[str, Any]) -> list[dict[str, Any]]:
    participants = pull_request.get("participants")
    if not isinstance(participants, list):
        return []
    return [participant for participant in participants if isinstance(participant, dict)]


def render_pull_request_list(pull_requests: Sequence[dict[str, Any]]) -> str:
    """Render a pull request listing."""
    if not pull_requests:
        return "No pull requests found matching the criteria."

    lines = [f"# Pull Requests ({len(pull_requests)} found)"]
    for pull_request in pull_requests:
        participants = _participants(pull_request)
        approvals = sum(1 for participant in participants if participant.get("approved"))
        lines.append("")
        lines.append(
            f"**#{pull_request.get('id')}** [{pull_request.get('state', 'UNKNOWN')}] "
            f"{pull_request.get('title', '')}"
        )
        lines.append(f"- Author: {_name(pull_request.get('author'))}")
        lines.append(
            f"- Branch: {_nested(pull_request, 'source', 'branch', 'name')} -> "
            f"{_nested(pull_request, 'destination', 'branch', 'name')}"
        )
        lines.append(f"- Approvals: {approvals}/{len(participants)}")
        lines.append(f"- Updated: {_format_date(pull_request.get('updated_on'))}")
    return "\n".join(lines)


def render_pull_request(pull_request: dict[str, Any]) -> str:
    """Render one pull request with its review state."""
    participants = _participants(pull_request)
    approved = [_name(p.get("user")) for p in participants if p.get("approved")]
    pending = [
        _name(p.get("user")) for p in participants if not p.get("approved") and p.get("role") == "REVIEWER"
    ]
    author = pull_request.get("author")
    username = _nested(pull_request, "author", "nickname") or _nested(pull_request, "author", "username")

    lines = [
        f"# Pull Request #{pull_request.get('id')} [{pull_request.get('state', 'UNKNOWN')}]",
        "",
        f"**Title:** {pull_request.get('title', '')}",
        f"**State:** {pull_request.get('state', 'UNKNOWN')}",
        f"**Author:** {_name(author)}" + (f" (@{username})" if username else ""),
        f"**Branch:** {_nested(pull_request, 'source', 'branch', 'name')} -> "
        f"{_nested(pull_request, 'destination', 'branch', 'name')}",
        f"**Created:** {_format_date(pull_request.get('created_on'))}",
        f"**Updated:** {_format_date(pull_request.get('updated_on'))}",
        "",
        "**Description:**",
        pull_request.get("description") or "No description provided",
        "",
        f"**Approvals ({len(approved)}):**",
        "\n".join(f"- {name}" for name in approved) or "None",
        "",
        f"**Pending Reviews ({len(pending)}):**",
        "\n".join(f"- {name}" for name in pending) or "None",
    ]
    merge_hash = _nested(pull_request, "merge_commit", "hash")
    if merge_hash:
        lines.extend(["", f"**Merge Commit:** {merge_hash}"])
    return "\n".join(lines)


def render_issue_list(issues: Sequence[dict[str, Any]]) -> str:
    """Render an issue listing."""
    if not issues:
        return "No issues found matching the criteria."

    lines = [f"# Issues ({len(issues)} found)"]
    for issue in issues:
        lines.append("")
        lines.append(
            f"**#{issue.get('id')}** [{issue.get('priority', 'unknown')}/{issue.get('kind', 'unknown')}] "
            f"{issue.get('title', '')}"
        )
        lines.append(f"- State: {issue.get('state', 'unknown')}")
        lines.append(f"- Reporter: {_name(issue.get('reporter'))}")
        lines.append(f"- Assignee: {_name(issue.get('assignee'), 'Unassigned')}")
        lines.append(f"- Updated: {_format_date(issue.get('updated_on'))}")
    return "\n".join(lines)


def render_issue(issue: dict[str, Any]) -> str:
    """Render a single issue."""
    lines = [
        f"# Issue #{issue.get('id')}",
        "",
        f"**Title:** {issue.get('title', '')}",
        f"**State:** {issue.get('state', 'unknown')}",
        f"**Kind:** {issue.get('kind', 'unknown')}",
        f"**Priority:** {issue.get('priority', 'unknown')}",
        f"**Reporter:** {_name(issue.get('reporter'))}",
        f"**Assignee:** {_name(issue.get('assignee'), 'Unassigned')}",
        f"**Created:** {_format_date(issue.get('created_on'))}",
        f"**Updated:** {_format_date(issue.get('updated_on'))}",
        "",
        "**Description:**",
        _nested(issue, "content", "raw") or "No description provided",
    ]
    return "\n".join(lines)


def render_commit_list(commits: Sequence[CommitSummary], branch: str | None = None) -> str:
    """Render a commit listing."""
    if not commits:
        return "No commits found."

    lines = [f"# Commits ({len(commits)} found)"]
    if branch:
        lines.extend(["", f"**Branch:** {branch}"])
    for commit in commits:
        lines.append("")
        lines.append(f"**{commit.short_hash}** {commit.summary}")
        lines.append(f"- Author: {commit.author}")
        lines.append(f"- Date: {_format_date(commit.date)}")
    return "\n".join(lines)


def render_branch_list(branches: Sequence[dict[str, Any]]) -> str:
    """Render a branch listing."""
    if not branches:
        return "No branches found."

    lines = [f"# Branches ({len(branches)} found)", ""]
    for branch in branches:
        target_hash = _nested(branch, "target", "hash")
        short_hash = target_hash[:8] if isinstance(target_hash, str) else "unknown"
        lines.append(f"**{branch.get('name', 'unknown')}** - {short_hash}")
    return "\n".join(lines)


def render_file_content(path: str, content: str, branch: str) -> str:
    return f"# File: {path}\n**Branch:** {branch}\n\n```\n{content}\n```"


def render_code_search_results(results: Sequence[dict[str, Any]], query: str) -> str:
    """Render file-name search matches."""
    if not results:
        return f'No code found matching query: "{query}"'

    lines = [f"# Code Search Results ({len(results)} found)", f'**Query:** "{query}"']
    for result in results:
        lines.append("")
        lines.append(f"**{result.get('path') or result.get('name')}**")
        lines.append(f"- Type: {result.get('type', 'unknown')}")
        lines.append(f"- Size: {result.get('size') or 'N/A'} bytes")
        lines.append(f"- Match: {result.get('match_type')}")
        lines.append(f"- Branch: {result.get('branch')}")
    return "\n".join(lines)


def render_pull_request_diff(pr_id: int, diff_text: str) -> str:
    return f"# Pull Request #{pr_id} - Code Changes\n\n```diff\n{diff_text}\n```"


def render_file_stats(pr_id: int, stats: Sequence[FileChangeStat]) -> str:
    """Render per-file change stats with totals."""
    if not stats:
        return (
            f"# Pull Request #{pr_id} - No Files Changed\n\n"
            "No file changes found for this pull request."
        )

    total_added = sum(stat.lines_added for stat in stats)
    total_removed = sum(stat.lines_removed for stat in stats)
    lines = [
        f"# Pull Request #{pr_id} - Files Changed ({len(stats)})",
        "",
        f"**Summary:** +{total_added} -{total_removed} lines across {len(stats)} files",
    ]
    for stat in stats:
        lines.append("")
        lines.append(f"{STATUS_MARKERS[stat.status]} **{stat.path}** ({stat.status})")
        lines.append(f"   +{stat.lines_added} -{stat.lines_removed} lines")
    return "\n".join(lines)


def render_too_large_summary(
    *,
    pr_id: int,
    stats: Sequence[FileChangeStat],
    estimated_tokens: float,
    max_size: int,
) -> str:
    """Summarize a diff that exceeds the caller's token budget."""
    lines = [
        f"**Diff Too Large ({round(estimated_tokens)} tokens > {max_size} limit)**",
        "",
        f"**Files changed ({len(stats)}):**",
    ]
    for stat in stats[:TOO_LARGE_LISTED_FILES]:
        lines.append(f"- {stat.path} ({stat.status}) +{stat.lines_added}/-{stat.lines_removed}")
    if len(stats) > TOO_LARGE_LISTED_FILES:
        lines.append(f"... and {len(stats) - TOO_LARGE_LISTED_FILES} more files")

    lines.extend(
        [
            "",
            "**Suggested approaches:**",
            "1. **Get specific file diff:** Use `file_path` parameter",
            "2. **Use git locally:**",
            "   ```bash",
            f"   git fetch origin pull/{pr_id}/head",
            "   git diff HEAD...FETCH_HEAD --stat",
            "   git diff HEAD...FETCH_HEAD -- path/to/specific/file",
            "   ```",
            "3. **Reduce context:** Use `context_lines: 2` parameter",
            "4. **Review in Bitbucket web interface**",
            "",
            "**Most changed files:**",
        ]
    )
    most_changed = sorted(stats, key=lambda stat: stat.total_changes, reverse=True)
    for stat in most_changed[:TOO_LARGE_TOP_FILES]:
        lines.append(f"- {stat.path} (+{stat.lines_added}/-{stat.lines_removed})")
    return "\n".join(lines)


def render_access_limited_report(
    *,
    ref_label: str,
    pr_id: int,
    snapshot: PullRequestSnapshot | None,
    attempts: Iterable[tuple[str, str]],
) -> str:
    """Explain that no strategy could read the diff and how to proceed."""
    title = snapshot.title if snapshot else "Unknown"
    author = snapshot.author if snapshot else "Unknown"
    state = snapshot.state if snapshot else "Unknown"
    source = snapshot.source_branch if snapshot else "unknown"
    destination = snapshot.destination_branch if snapshot else "unknown"

    lines = [
        f"# Pull Request #{pr_id} - Diff Not Accessible",
        "",
        f"**Repository:** {ref_label}",
        f"**Title:** {title}",
        f"**Author:** {author}",
        f"**Branch:** {source} -> {destination}",
        f"**State:** {state}",
        "",
        "**Reason:** limited access to PR diff content",
        "",
        "**Strategies tried:**",
    ]
    lines.extend(f"- {strategy}: {reason}" for strategy, reason in attempts)
    lines.extend(
        [
            "",
            "**How to get the diff:**",
            "1. Ask the PR author or a repository admin to add you as a reviewer",
            "2. Use git locally:",
            "   ```bash",
            f"   git fetch origin {source}",
            f"   git diff origin/{destination}...origin/{source}",
            "   ```",
            "3. Open the pull request in the Bitbucket web interface",
        ]
    )
    return "\n".join(lines)


def render_pull_request_created(pull_request: dict[str, Any]) -> str:
    reviewers = pull_request.get("reviewers")
    reviewer_names = (
        [_name(reviewer) for reviewer in reviewers if isinstance(reviewer, dict)]
        if isinstance(reviewers, list)
        else []
    )
    lines = [
        "Pull request created successfully!",
        "",
        f"**#{pull_request.get('id')}** {pull_request.get('title', '')}",
        f"**Branch:** {_nested(pull_request, 'source', 'branch', 'name')} -> "
        f"{_nested(pull_request, 'destination', 'branch', 'name')}",
        f"**Author:** {_name(pull_request.get('author'))}",
        f"**Reviewers:** {', '.join(reviewer_names) or 'None assigned'}",
    ]
    return "\n".join(lines)


def render_issue_created(issue: dict[str, Any]) -> str:
    lines = [
        "Issue created successfully!",
        "",
        f"**#{issue.get('id')}** {issue.get('title', '')}",
        f"**Kind:** {issue.get('kind', 'unknown')}",
        f"**Priority:** {issue.get('priority', 'unknown')}",
        f"**Assignee:** {_name(issue.get('assignee'), 'Unassigned')}",
    ]
    return "\n".join(lines)


def render_configured(credentials: BitbucketCredentials, identity: TokenValidation | None) -> str:
    """Confirm configuration without echoing the token."""
    lines = [
        "Bitbucket configured successfully with API token!",
        "",
        f"**Base URL:** {credentials.base_url}",
        f"**Email:** {credentials.email}",
        f"**API Token:** {credentials.api_token[:4]}...",
        f"**Workspace:** {credentials.workspace or 'Not set'}",
    ]
    if identity is not None:
        lines.append(f"**Authenticated as:** {identity.display_name}")
    else:
        lines.append("**Authenticated as:** token could not be validated")
    return "\n".join(lines)
