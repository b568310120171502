"""Unit tests for the diff strategy chain and diff views."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import httpx
import pytest
from bitbucket_review.bitbucket_client import (
    BitbucketContext,
    PullRequestRef,
    PullRequestSnapshot,
)
from bitbucket_review.cache import CacheKind, cache_key
from bitbucket_review.diff_fetcher import (
    FailureReason,
    KeywordRelevanceCheck,
    fetch_file_specific_diff,
    fetch_pull_request_diff,
    fetch_pull_request_diff_view,
    fetch_pull_request_file_stats,
)
from bitbucket_review.transport import BitbucketApiError

ContextFactory = Callable[..., BitbucketContext]
REF = PullRequestRef(workspace="acme", repo_slug="rocket", pr_id=42)
REPO = "/2.0/repositories/acme/rocket"
PR = f"{REPO}/pullrequests/42"
BRANCH_COMPARE = f"{REPO}/diff/main...feature/login"
COMMIT_RANGE = f"{REPO}/diff/dst456..src123"
NOT_FOUND = (404, {"type": "error", "error": {"message": "Not found"}})

LOGIN_DIFF = "\n".join(
    [
        "diff --git a/app/login.py b/app/login.py",
        "--- a/app/login.py",
        "+++ b/app/login.py",
        "@@ -1,2 +1,3 @@",
        " def login(user):",
        "+    throttle(user)",
        "     return check_password(user)",
    ]
)
PAYMENT_DIFF = "\n".join(
    [
        "diff --git a/billing/invoice.py b/billing/invoice.py",
        "--- a/billing/invoice.py",
        "+++ b/billing/invoice.py",
        "@@ -1,2 +1,2 @@",
        "-def create_invoice(payment):",
        "+def create_invoice(payment, currency):",
    ]
)
TWO_FILE_DIFF = "\n".join(
    [
        "diff --git a/src/a.ts b/src/a.ts",
        "--- a/src/a.ts",
        "+++ b/src/a.ts",
        "@@ -1 +1 @@",
        "-export const a = 1;",
        "+export const a = 2;",
        "diff --git a/src/b.ts b/src/b.ts",
        "--- a/src/b.ts",
        "+++ b/src/b.ts",
        "@@ -1 +1 @@",
        "-export const b = 1;",
        "+export const b = 2;",
    ]
)


def make_pr_payload(title: str = "Add login throttling") -> dict[str, Any]:
    """Build a minimal valid pull request API payload."""
    return {
        "id": 42,
        "title": title,
        "description": "",
        "state": "OPEN",
        "author": {"display_name": "Dana Dev"},
        "source": {"branch": {"name": "feature/login"}, "commit": {"hash": "src123"}},
        "destination": {"branch": {"name": "main"}, "commit": {"hash": "dst456"}},
    }


def commits_page(*hashes: str) -> dict[str, Any]:
    return {
        "values": [
            {"hash": commit_hash, "message": f"commit {commit_hash}", "author": {"raw": "Dana"}}
            for commit_hash in hashes
        ]
    }


def make_router(
    routes: dict[str, tuple[int, Any]], seen: list[str]
) -> Callable[[httpx.Request], httpx.Response]:
    """Route requests by path (plus `?path=` filter) to canned responses."""

    def handler(request: httpx.Request) -> httpx.Response:
        key = request.url.path
        path_filter = request.url.params.get("path")
        if path_filter:
            key = f"{key}?path={path_filter}"
        seen.append(key)
        status, body = routes.get(key, NOT_FOUND)
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)

    return handler


def snapshot(title: str, source_branch: str = "feature/x") -> PullRequestSnapshot:
    return PullRequestSnapshot(
        pr_id=1,
        title=title,
        state="OPEN",
        author="Dana",
        description="",
        source_branch=source_branch,
        source_commit=None,
        destination_branch="main",
        destination_commit=None,
    )


@pytest.mark.unit
def test_relevance_check_passes_prs_without_domain() -> None:
    check = KeywordRelevanceCheck()

    assert check(snapshot("Bump dependencies"), PAYMENT_DIFF) is True


@pytest.mark.unit
def test_relevance_check_rejects_diff_from_other_domain() -> None:
    check = KeywordRelevanceCheck()

    assert check.detect_domain(snapshot("Add login throttling")) == "authentication"
    assert check(snapshot("Add login throttling"), PAYMENT_DIFF) is False


@pytest.mark.unit
def test_relevance_check_accepts_diff_mentioning_pr_domain() -> None:
    check = KeywordRelevanceCheck()

    assert check(snapshot("Add login throttling"), LOGIN_DIFF + "\n" + PAYMENT_DIFF) is True


@pytest.mark.unit
def test_relevance_check_requires_threshold_hits() -> None:
    check = KeywordRelevanceCheck(hit_threshold=4)

    assert check(snapshot("Add login throttling"), PAYMENT_DIFF) is True


@pytest.mark.unit
def test_relevance_check_reads_domain_from_branch_name() -> None:
    check = KeywordRelevanceCheck(keyword_groups={"search": ("search",), "billing": ("invoice", "payment")})

    assert check.detect_domain(snapshot("Misc fixes", source_branch="feature/search_ranking")) == "search"


@pytest.mark.unit
def test_relevance_check_ignores_keyword_prefixes_of_longer_words() -> None:
    check = KeywordRelevanceCheck()
    title = snapshot("Show author avatar on profile page")

    assert check.count_hits("authentication", "author Authorization authority") == 0
    assert check.detect_domain(title) == "profile"
    assert check(title, "+render_avatar(profile)\n+load_preferences(profile)") is True


@pytest.mark.unit
def test_relevance_check_matches_plural_keywords() -> None:
    check = KeywordRelevanceCheck()

    assert check.count_hits("payments", "+sync_refunds(invoices)") == 2


@pytest.mark.unit
def test_relevance_check_picks_domain_with_most_hits() -> None:
    check = KeywordRelevanceCheck()

    assert check.detect_domain(snapshot("Move login link into profile avatar menu")) == "profile"
    assert check.detect_domain(snapshot("Fix login", source_branch="feature/avatar")) == "authentication"


@pytest.mark.unit
def test_direct_diff_is_used_when_relevant(make_context: ContextFactory) -> None:
    seen: list[str] = []
    routes = {PR: (200, make_pr_payload()), f"{PR}/diff": (200, LOGIN_DIFF)}

    result = asyncio.run(
        fetch_pull_request_diff(context=make_context(make_router(routes, seen)), ref=REF)
    )

    assert result.strategy == "direct"
    assert result.text == LOGIN_DIFF
    assert not result.access_limited


@pytest.mark.unit
def test_commit_fallback_after_not_found_skips_branch_compare(
    make_context: ContextFactory,
) -> None:
    seen: list[str] = []
    routes = {
        PR: (200, make_pr_payload()),
        f"{PR}/commits": (200, commits_page("c1", "c2")),
        f"{REPO}/diff/c1": (200, LOGIN_DIFF),
        f"{REPO}/diff/c2": (200, PAYMENT_DIFF),
    }

    result = asyncio.run(
        fetch_pull_request_diff(context=make_context(make_router(routes, seen)), ref=REF)
    )

    assert result.strategy == "commits"
    assert result.text == LOGIN_DIFF
    assert result.attempts[0].failure is FailureReason.NOT_FOUND
    assert BRANCH_COMPARE not in seen
    assert f"{REPO}/diff/c2" not in seen


@pytest.mark.unit
def test_irrelevant_direct_diff_falls_through_to_commits(make_context: ContextFactory) -> None:
    seen: list[str] = []
    routes = {
        PR: (200, make_pr_payload()),
        f"{PR}/diff": (200, PAYMENT_DIFF),
        f"{PR}/commits": (200, commits_page("c1")),
        f"{REPO}/diff/c1": (200, LOGIN_DIFF),
    }

    result = asyncio.run(
        fetch_pull_request_diff(context=make_context(make_router(routes, seen)), ref=REF)
    )

    assert result.strategy == "commits"
    assert result.text == LOGIN_DIFF
    assert result.attempts[0].failure is FailureReason.IRRELEVANT


@pytest.mark.unit
def test_commit_fallback_skips_irrelevant_commits(make_context: ContextFactory) -> None:
    seen: list[str] = []
    routes = {
        PR: (200, make_pr_payload()),
        f"{PR}/commits": (200, commits_page("c1", "c2", "c3", "c4")),
        f"{REPO}/diff/c1": (200, PAYMENT_DIFF),
        f"{REPO}/diff/c2": (403, {"error": {"message": "Forbidden"}}),
        f"{REPO}/diff/c3": (200, LOGIN_DIFF),
        f"{REPO}/diff/c4": (200, LOGIN_DIFF),
    }

    result = asyncio.run(
        fetch_pull_request_diff(context=make_context(make_router(routes, seen)), ref=REF)
    )

    assert result.strategy == "commits"
    assert f"{REPO}/diff/c4" not in seen


@pytest.mark.unit
def test_branch_compare_then_commit_range(make_context: ContextFactory) -> None:
    seen: list[str] = []
    routes = {
        PR: (200, make_pr_payload()),
        f"{PR}/commits": (200, {"values": []}),
        COMMIT_RANGE: (200, LOGIN_DIFF),
    }

    result = asyncio.run(
        fetch_pull_request_diff(context=make_context(make_router(routes, seen)), ref=REF)
    )

    assert result.strategy == "commit_range"
    assert [attempt.strategy for attempt in result.attempts] == [
        "direct",
        "commits",
        "branch_compare",
        "commit_range",
    ]
    assert BRANCH_COMPARE in seen


@pytest.mark.unit
def test_direct_fetch_reraises_non_not_found_errors(make_context: ContextFactory) -> None:
    seen: list[str] = []
    routes = {PR: (200, make_pr_payload()), f"{PR}/diff": (403, {"error": {"message": "Forbidden"}})}

    with pytest.raises(BitbucketApiError) as error_info:
        asyncio.run(
            fetch_pull_request_diff(context=make_context(make_router(routes, seen)), ref=REF)
        )

    assert error_info.value.status_code == 403
    assert f"{PR}/commits" not in seen


@pytest.mark.unit
def test_direct_fetch_purges_cached_pull_request(make_context: ContextFactory) -> None:
    seen: list[str] = []
    routes = {PR: (200, make_pr_payload()), f"{PR}/diff": (200, LOGIN_DIFF)}
    context = make_context(make_router(routes, seen))
    context.cache.set(
        cache_key(CacheKind.PULL_REQUEST, "acme", "rocket", 42),
        {**make_pr_payload(title="Stale payments title")},
    )

    result = asyncio.run(fetch_pull_request_diff(context=context, ref=REF))

    assert PR in seen
    assert result.snapshot is not None
    assert result.snapshot.title == "Add login throttling"


@pytest.mark.unit
def test_every_strategy_failing_returns_access_report(make_context: ContextFactory) -> None:
    seen: list[str] = []
    routes = {PR: (200, make_pr_payload())}

    result = asyncio.run(
        fetch_pull_request_diff(context=make_context(make_router(routes, seen)), ref=REF)
    )

    assert result.access_limited
    assert "limited access to PR diff content" in result.text
    assert "Add login throttling" in result.text
    assert "Dana Dev" in result.text
    assert "feature/login -> main" in result.text
    for strategy in ("direct", "commits", "branch_compare", "commit_range"):
        assert f"- {strategy}:" in result.text


@pytest.mark.unit
def test_file_specific_diff_extracts_from_unfiltered_range(make_context: ContextFactory) -> None:
    seen: list[str] = []
    routes = {
        PR: (200, make_pr_payload(title="Tweak constants")),
        f"{COMMIT_RANGE}?path=src/a.ts": (200, ""),
        COMMIT_RANGE: (200, TWO_FILE_DIFF),
    }

    result = asyncio.run(
        fetch_file_specific_diff(
            context=make_context(make_router(routes, seen)), ref=REF, file_path="src/a.ts"
        )
    )

    assert result.strategy == "range_extracted"
    assert result.text.startswith("diff --git a/src/a.ts b/src/a.ts")
    assert "src/b.ts" not in result.text
    assert result.attempts[0].failure is FailureReason.EMPTY


@pytest.mark.unit
def test_file_specific_diff_prefers_server_side_filter(make_context: ContextFactory) -> None:
    seen: list[str] = []
    a_only = TWO_FILE_DIFF.split("diff --git a/src/b.ts")[0].rstrip("\n")
    routes = {
        PR: (200, make_pr_payload(title="Tweak constants")),
        f"{COMMIT_RANGE}?path=src/a.ts": (200, a_only),
    }

    result = asyncio.run(
        fetch_file_specific_diff(
            context=make_context(make_router(routes, seen)), ref=REF, file_path="src/a.ts"
        )
    )

    assert result.strategy == "range_filtered"
    assert result.text == a_only


@pytest.mark.unit
def test_file_specific_diff_uses_latest_commit(make_context: ContextFactory) -> None:
    seen: list[str] = []
    routes = {
        PR: (200, make_pr_payload(title="Tweak constants")),
        f"{PR}/commits": (200, commits_page("c9", "c8")),
        f"{REPO}/diff/c9?path=src/a.ts": (200, TWO_FILE_DIFF.split("diff --git a/src/b.ts")[0]),
    }

    result = asyncio.run(
        fetch_file_specific_diff(
            context=make_context(make_router(routes, seen)), ref=REF, file_path="src/a.ts"
        )
    )

    assert result.strategy == "latest_commit"
    assert [attempt.strategy for attempt in result.attempts] == [
        "range_filtered",
        "range_extracted",
        "latest_commit",
    ]


@pytest.mark.unit
def test_file_specific_diff_falls_back_to_full_diff(make_context: ContextFactory) -> None:
    seen: list[str] = []
    routes = {
        PR: (200, make_pr_payload(title="Tweak constants")),
        f"{PR}/diff": (200, TWO_FILE_DIFF),
    }

    result = asyncio.run(
        fetch_file_specific_diff(
            context=make_context(make_router(routes, seen)), ref=REF, file_path="src/b.ts"
        )
    )

    assert result.strategy == "full_diff_extracted"
    assert result.text.startswith("diff --git a/src/b.ts b/src/b.ts")
    assert "src/a.ts" not in result.text


@pytest.mark.unit
def test_diff_view_scopes_to_requested_file(make_context: ContextFactory) -> None:
    seen: list[str] = []
    routes = {
        PR: (200, make_pr_payload(title="Tweak constants")),
        f"{COMMIT_RANGE}?path=src/a.ts": (200, ""),
        COMMIT_RANGE: (200, TWO_FILE_DIFF),
    }

    view = asyncio.run(
        fetch_pull_request_diff_view(
            context=make_context(make_router(routes, seen)), ref=REF, file_path="src/a.ts"
        )
    )

    assert view.files == ("src/a.ts",)
    assert "diff --git a/src/a.ts b/src/a.ts" in view.text
    assert "diff --git a/src/b.ts" not in view.text
    assert not view.truncated


def make_large_diff(file_count: int, lines_per_file: int) -> str:
    blocks = []
    for index in range(file_count):
        path = f"pkg/module_{index:02d}.py"
        body = "\n".join(f"+value_{index}_{line:04d} = {line}" for line in range(lines_per_file + index))
        blocks.append(f"diff --git a/{path} b/{path}\n--- a/{path}\n+++ b/{path}\n@@ -0,0 +1 @@\n{body}")
    return "\n".join(blocks)


@pytest.mark.unit
def test_oversized_diff_returns_summary(make_context: ContextFactory) -> None:
    large_diff = make_large_diff(file_count=12, lines_per_file=450)
    assert len(large_diff) > 100_000
    seen: list[str] = []
    routes = {
        PR: (200, make_pr_payload(title="Refactor modules")),
        f"{PR}/diff": (200, large_diff),
    }

    view = asyncio.run(
        fetch_pull_request_diff_view(
            context=make_context(make_router(routes, seen)), ref=REF, max_size=20000
        )
    )

    assert view.truncated
    assert view.estimated_tokens > 20000
    assert "Diff Too Large" in view.text
    assert "diff --git" not in view.text
    files_section = view.text.split("**Files changed (12):**")[1].split("**Suggested approaches:**")[0]
    listed = [line for line in files_section.splitlines() if line.startswith("- ")]
    assert len(listed) == 10
    assert "... and 2 more files" in files_section
    most_changed = view.text.split("**Most changed files:**")[1].strip().splitlines()
    assert most_changed[0].startswith("- pkg/module_11.py")
    assert len(most_changed) == 5
    assert len(view.files) == 12


@pytest.mark.unit
def test_oversized_diff_prefers_diffstat_endpoint(make_context: ContextFactory) -> None:
    large_diff = make_large_diff(file_count=2, lines_per_file=2000)
    seen: list[str] = []
    routes = {
        PR: (200, make_pr_payload(title="Refactor modules")),
        f"{PR}/diff": (200, large_diff),
        f"{PR}/diffstat": (
            200,
            {
                "values": [
                    {
                        "status": "added",
                        "old": None,
                        "new": {"path": "from/diffstat.py"},
                        "lines_added": 5,
                        "lines_removed": 0,
                    }
                ]
            },
        ),
    }

    view = asyncio.run(
        fetch_pull_request_diff_view(
            context=make_context(make_router(routes, seen)), ref=REF, max_size=1000
        )
    )

    assert view.truncated
    assert view.files == ("from/diffstat.py",)


@pytest.mark.unit
def test_small_diff_is_filtered(make_context: ContextFactory) -> None:
    seen: list[str] = []
    diff_text = LOGIN_DIFF + "\n+   \n context_a\n context_b"
    routes = {PR: (200, make_pr_payload()), f"{PR}/diff": (200, diff_text)}

    view = asyncio.run(
        fetch_pull_request_diff_view(
            context=make_context(make_router(routes, seen)),
            ref=REF,
            ignore_whitespace=True,
            context_lines=0,
        )
    )

    assert not view.truncated
    assert "+   " not in view.text.split("\n")
    assert " context_b" not in view.text
    assert "+    throttle(user)" in view.text


@pytest.mark.unit
def test_diff_view_returns_access_report_unfiltered(make_context: ContextFactory) -> None:
    seen: list[str] = []
    routes = {PR: (200, make_pr_payload())}

    view = asyncio.run(
        fetch_pull_request_diff_view(
            context=make_context(make_router(routes, seen)), ref=REF, context_lines=0, max_size=1000
        )
    )

    assert view.access_limited
    assert not view.truncated
    assert "limited access to PR diff content" in view.text


@pytest.mark.unit
def test_file_stats_use_diffstat_endpoint(make_context: ContextFactory) -> None:
    seen: list[str] = []
    routes = {
        f"{PR}/diffstat": (
            200,
            {
                "values": [
                    {
                        "status": "modified",
                        "old": {"path": "app.py"},
                        "new": {"path": "app.py"},
                        "lines_added": 1,
                        "lines_removed": 1,
                    }
                ]
            },
        )
    }

    result = asyncio.run(
        fetch_pull_request_file_stats(context=make_context(make_router(routes, seen)), ref=REF)
    )

    assert result.source == "diffstat"
    assert [stat.path for stat in result.stats] == ["app.py"]
    assert f"{PR}/diff" not in seen


@pytest.mark.unit
def test_file_stats_parse_diff_when_diffstat_missing(make_context: ContextFactory) -> None:
    seen: list[str] = []
    routes = {PR: (200, make_pr_payload(title="Tweak constants")), f"{PR}/diff": (200, TWO_FILE_DIFF)}

    result = asyncio.run(
        fetch_pull_request_file_stats(context=make_context(make_router(routes, seen)), ref=REF)
    )

    assert result.source == "direct"
    assert [(stat.path, stat.lines_added, stat.lines_removed) for stat in result.stats] == [
        ("src/a.ts", 1, 1),
        ("src/b.ts", 1, 1),
    ]


@pytest.mark.unit
def test_file_stats_return_report_when_access_limited(make_context: ContextFactory) -> None:
    seen: list[str] = []
    routes = {PR: (200, make_pr_payload())}

    result = asyncio.run(
        fetch_pull_request_file_stats(context=make_context(make_router(routes, seen)), ref=REF)
    )

    assert result.access_limited
    assert result.stats == ()
    assert result.report is not None
    assert "limited access to PR diff content" in result.report
