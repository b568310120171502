"""Pull request diff retrieval through an ordered chain of fallback strategies."""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from functools import lru_cache

import httpx

from bitbucket_review.bitbucket_client import (
    BitbucketContext,
    PullRequestRef,
    PullRequestSnapshot,
    fetch_branch_compare_diff,
    fetch_commit_diff,
    fetch_commit_range_diff,
    fetch_pull_request_commits,
    fetch_pull_request_diff_text,
    fetch_pull_request_diffstat,
    fetch_pull_request_snapshot,
    invalidate_pull_request,
)
from bitbucket_review.diff_tools import (
    DEFAULT_CHARS_PER_TOKEN,
    FileChangeStat,
    apply_diff_filters,
    estimate_tokens,
    extract_file_diff,
    find_file_blocks,
    parse_diff_file_stats,
)
from bitbucket_review.output import render_access_limited_report, render_too_large_summary
from bitbucket_review.transport import BitbucketApiError

logger = logging.getLogger(__name__)

MAX_COMMIT_CANDIDATES = 3
DEFAULT_MAX_TOKENS = 20000
DEFAULT_RELEVANCE_HIT_THRESHOLD = 2
DEFAULT_DOMAIN_KEYWORDS: dict[str, tuple[str, ...]] = {
    "authentication": (
        "auth",
        "authenticate",
        "authentication",
        "login",
        "logout",
        "password",
        "oauth",
        "credential",
    ),
    "payments": ("payment", "invoice", "billing", "checkout", "refund", "subscription"),
    "profile": ("profile", "avatar", "preferences", "account settings"),
    "notifications": ("notification", "webhook", "email template", "push message"),
}


class FailureReason(StrEnum):
    """Why a strategy produced no usable diff."""

    NOT_FOUND = "not_found"
    EMPTY = "empty"
    IRRELEVANT = "irrelevant"
    UNAVAILABLE = "unavailable"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class StrategyResult:
    """Either diff text or the reason none was produced."""

    text: str | None = None
    failure: FailureReason | None = None
    detail: str = ""

    @property
    def succeeded(self) -> bool:
        return self.text is not None

    @classmethod
    def success(cls, text: str) -> StrategyResult:
        return cls(text=text)

    @classmethod
    def failed(cls, reason: FailureReason, detail: str = "") -> StrategyResult:
        return cls(failure=reason, detail=detail)


@dataclass(frozen=True, slots=True)
class StrategyAttempt:
    """One strategy run recorded for diagnostics and the access report."""

    strategy: str
    failure: FailureReason | None
    detail: str = ""


RelevanceCheck = Callable[[PullRequestSnapshot, str], bool]


@lru_cache(maxsize=256)
def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    # Whole keyword (optionally plural); `_`, `/` and `.` count as separators.
    return re.compile(rf"(?<![a-z0-9]){re.escape(keyword)}s?(?![a-z0-9])", re.IGNORECASE)


@dataclass(slots=True)
class KeywordRelevanceCheck:
    """Reject diffs that look like they belong to a different feature area.

    The PR's domain is read from its title and source branch. A diff is
    rejected only when none of that domain's keywords occur in it and some
    other domain reaches `hit_threshold` distinct keywords. PRs with no
    detectable domain always pass.
    """

    keyword_groups: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_DOMAIN_KEYWORDS)
    )
    hit_threshold: int = DEFAULT_RELEVANCE_HIT_THRESHOLD

    def count_hits(self, domain: str, text: str) -> int:
        """Count distinct keywords of one domain present in text."""
        return sum(
            1 for keyword in self.keyword_groups.get(domain, ()) if _keyword_pattern(keyword).search(text)
        )

    def detect_domain(self, snapshot: PullRequestSnapshot) -> str | None:
        """Return the domain with the most keyword hits in the PR title and source branch.

        Ties go to the group listed first.
        """
        subject = f"{snapshot.title} {snapshot.source_branch}"
        best_domain: str | None = None
        best_hits = 0
        for domain in self.keyword_groups:
            hits = self.count_hits(domain, subject)
            if hits > best_hits:
                best_domain, best_hits = domain, hits
        return best_domain

    def __call__(self, snapshot: PullRequestSnapshot, diff_text: str) -> bool:
        domain = self.detect_domain(snapshot)
        if domain is None:
            return True
        if self.count_hits(domain, diff_text) > 0:
            return True
        for other_domain in self.keyword_groups:
            if other_domain == domain:
                continue
            if self.count_hits(other_domain, diff_text) >= self.hit_threshold:
                logger.info(
                    "Diff for PR about %s looks like %s changes; treating it as suspect",
                    domain,
                    other_domain,
                )
                return False
        return True


@dataclass(slots=True)
class DiffFetchContext:
    """Inputs shared by every strategy for one diff request."""

    bitbucket: BitbucketContext
    ref: PullRequestRef
    relevance_check: RelevanceCheck
    snapshot: PullRequestSnapshot | None = None

    async def load_snapshot(self) -> PullRequestSnapshot:
        """Fetch PR metadata once per request."""
        if self.snapshot is None:
            self.snapshot = await fetch_pull_request_snapshot(context=self.bitbucket, ref=self.ref)
        return self.snapshot

    async def try_load_snapshot(self) -> PullRequestSnapshot | None:
        """Fetch PR metadata, returning None if it is not accessible."""
        try:
            return await self.load_snapshot()
        except (BitbucketApiError, httpx.HTTPError) as error:
            logger.warning("Could not load metadata for PR #%d: %s", self.ref.pr_id, error)
            return None


DiffStrategy = Callable[[DiffFetchContext], Awaitable[StrategyResult]]


async def fetch_direct_diff(context: DiffFetchContext) -> StrategyResult:
    """Direct PR diff endpoint; only a 404 lets the chain continue."""
    invalidate_pull_request(context.bitbucket, context.ref)
    try:
        text = await fetch_pull_request_diff_text(context=context.bitbucket, ref=context.ref)
    except BitbucketApiError as error:
        if error.status_code == 404:
            return StrategyResult.failed(FailureReason.NOT_FOUND, error.upstream_message)
        raise

    if not text.strip():
        return StrategyResult.failed(FailureReason.EMPTY, "direct diff was empty")

    snapshot = await context.try_load_snapshot()
    if snapshot is None:
        return StrategyResult.success(text)
    if not context.relevance_check(snapshot, text):
        return StrategyResult.failed(
            FailureReason.IRRELEVANT, "direct diff does not match the pull request"
        )
    return StrategyResult.success(text)


async def fetch_commit_diffs(context: DiffFetchContext) -> StrategyResult:
    """Try the first few single-commit diffs of the PR."""
    try:
        commits = await fetch_pull_request_commits(context=context.bitbucket, ref=context.ref)
    except (BitbucketApiError, httpx.HTTPError) as error:
        return StrategyResult.failed(FailureReason.UNAVAILABLE, str(error))
    if not commits:
        return StrategyResult.failed(FailureReason.EMPTY, "pull request has no commits")

    snapshot = await context.try_load_snapshot()
    rejected = 0
    for commit in commits[:MAX_COMMIT_CANDIDATES]:
        try:
            text = await fetch_commit_diff(
                context=context.bitbucket,
                workspace=context.ref.workspace,
                repo_slug=context.ref.repo_slug,
                commit_hash=commit.hash,
            )
        except (BitbucketApiError, httpx.HTTPError) as error:
            logger.info("Skipping commit %s: %s", commit.short_hash, error)
            continue
        if not text.strip():
            continue
        if snapshot is not None and not context.relevance_check(snapshot, text):
            logger.info("Skipping commit %s: content does not match the PR", commit.short_hash)
            rejected += 1
            continue
        logger.info("Using diff of commit %s", commit.short_hash)
        return StrategyResult.success(text)

    if rejected:
        return StrategyResult.failed(
            FailureReason.IRRELEVANT, f"{rejected} commit diff(s) did not match the pull request"
        )
    return StrategyResult.failed(FailureReason.UNAVAILABLE, "no commit diff could be fetched")


async def fetch_branch_compare(context: DiffFetchContext) -> StrategyResult:
    """Three-dot compare of destination and source branches."""
    snapshot = await context.try_load_snapshot()
    if snapshot is None:
        return StrategyResult.failed(FailureReason.UNAVAILABLE, "branch names unknown")
    try:
        text = await fetch_branch_compare_diff(
            context=context.bitbucket,
            workspace=context.ref.workspace,
            repo_slug=context.ref.repo_slug,
            destination_branch=snapshot.destination_branch,
            source_branch=snapshot.source_branch,
        )
    except BitbucketApiError as error:
        reason = FailureReason.NOT_FOUND if error.status_code == 404 else FailureReason.ERROR
        return StrategyResult.failed(reason, error.upstream_message)
    except httpx.HTTPError as error:
        return StrategyResult.failed(FailureReason.ERROR, str(error))
    if not text.strip():
        return StrategyResult.failed(FailureReason.EMPTY, "branch compare was empty")
    return StrategyResult.success(text)


async def fetch_commit_range(context: DiffFetchContext) -> StrategyResult:
    """Two-dot compare of the destination and source head commits."""
    snapshot = await context.try_load_snapshot()
    if snapshot is None or not snapshot.source_commit or not snapshot.destination_commit:
        return StrategyResult.failed(FailureReason.UNAVAILABLE, "commit hashes unknown")
    try:
        text = await fetch_commit_range_diff(
            context=context.bitbucket,
            workspace=context.ref.workspace,
            repo_slug=context.ref.repo_slug,
            base_hash=snapshot.destination_commit,
            head_hash=snapshot.source_commit,
        )
    except BitbucketApiError as error:
        reason = FailureReason.NOT_FOUND if error.status_code == 404 else FailureReason.ERROR
        return StrategyResult.failed(reason, error.upstream_message)
    except httpx.HTTPError as error:
        return StrategyResult.failed(FailureReason.ERROR, str(error))
    if not text.strip():
        return StrategyResult.failed(FailureReason.EMPTY, "commit range was empty")
    return StrategyResult.success(text)


DIFF_STRATEGIES: tuple[tuple[str, DiffStrategy], ...] = (
    ("direct", fetch_direct_diff),
    ("commits", fetch_commit_diffs),
    ("branch_compare", fetch_branch_compare),
    ("commit_range", fetch_commit_range),
)


@dataclass(frozen=True, slots=True)
class PullRequestDiff:
    """Outcome of a diff request: diff text or the access-limited report."""

    text: str
    strategy: str | None
    attempts: tuple[StrategyAttempt, ...]
    snapshot: PullRequestSnapshot | None = None

    @property
    def access_limited(self) -> bool:
        return self.strategy is None


async def _run_strategies(
    context: DiffFetchContext,
    strategies: tuple[tuple[str, DiffStrategy], ...],
) -> PullRequestDiff:
    attempts: list[StrategyAttempt] = []
    for name, strategy in strategies:
        result = await strategy(context)
        attempts.append(StrategyAttempt(strategy=name, failure=result.failure, detail=result.detail))
        if result.succeeded:
            logger.info("PR #%d diff resolved by %s strategy", context.ref.pr_id, name)
            return PullRequestDiff(
                text=result.text or "",
                strategy=name,
                attempts=tuple(attempts),
                snapshot=context.snapshot,
            )
        logger.info(
            "PR #%d diff strategy %s failed (%s): %s",
            context.ref.pr_id,
            name,
            result.failure,
            result.detail,
        )

    snapshot = await context.try_load_snapshot()
    logger.warning("PR #%d diff is not accessible by any strategy", context.ref.pr_id)
    report = render_access_limited_report(
        ref_label=f"{context.ref.workspace}/{context.ref.repo_slug}",
        pr_id=context.ref.pr_id,
        snapshot=snapshot,
        attempts=[(attempt.strategy, str(attempt.failure)) for attempt in attempts],
    )
    return PullRequestDiff(text=report, strategy=None, attempts=tuple(attempts), snapshot=snapshot)


async def fetch_pull_request_diff(
    *,
    context: BitbucketContext,
    ref: PullRequestRef,
    relevance_check: RelevanceCheck | None = None,
    strategies: tuple[tuple[str, DiffStrategy], ...] = DIFF_STRATEGIES,
) -> PullRequestDiff:
    """Resolve a PR's full diff, degrading to an access-limited report."""
    fetch_context = DiffFetchContext(
        bitbucket=context,
        ref=ref,
        relevance_check=relevance_check or KeywordRelevanceCheck(),
    )
    return await _run_strategies(fetch_context, strategies)


async def fetch_file_specific_diff(
    *,
    context: BitbucketContext,
    ref: PullRequestRef,
    file_path: str,
    relevance_check: RelevanceCheck | None = None,
) -> PullRequestDiff:
    """Resolve one file's diff; empty results count as failures."""
    fetch_context = DiffFetchContext(
        bitbucket=context,
        ref=ref,
        relevance_check=relevance_check or KeywordRelevanceCheck(),
    )
    attempts: list[StrategyAttempt] = []

    def record(strategy: str, text: str | None, error: Exception | None = None) -> str | None:
        if text is not None and text.strip():
            attempts.append(StrategyAttempt(strategy=strategy, failure=None))
            return text
        reason = FailureReason.ERROR if error is not None else FailureReason.EMPTY
        attempts.append(StrategyAttempt(strategy=strategy, failure=reason, detail=str(error or "")))
        logger.info("File diff strategy %s failed for %s (%s)", strategy, file_path, reason)
        return None

    def resolved(strategy: str, text: str) -> PullRequestDiff:
        return PullRequestDiff(
            text=text,
            strategy=strategy,
            attempts=tuple(attempts),
            snapshot=fetch_context.snapshot,
        )

    snapshot = await fetch_context.try_load_snapshot()
    if snapshot is not None and snapshot.source_commit and snapshot.destination_commit:
        range_args = {
            "context": context,
            "workspace": ref.workspace,
            "repo_slug": ref.repo_slug,
            "base_hash": snapshot.destination_commit,
            "head_hash": snapshot.source_commit,
        }
        try:
            text = record("range_filtered", await fetch_commit_range_diff(**range_args, path=file_path))
        except (BitbucketApiError, httpx.HTTPError) as error:
            text = record("range_filtered", None, error)
        if text is not None:
            return resolved("range_filtered", text)

        try:
            full_range = await fetch_commit_range_diff(**range_args)
            blocks = find_file_blocks(full_range, file_path)
            text = record("range_extracted", "\n\n".join(blocks) if blocks else None)
        except (BitbucketApiError, httpx.HTTPError) as error:
            text = record("range_extracted", None, error)
        if text is not None:
            return resolved("range_extracted", text)
    else:
        attempts.append(
            StrategyAttempt(
                strategy="range_filtered",
                failure=FailureReason.UNAVAILABLE,
                detail="commit hashes unknown",
            )
        )

    try:
        commits = await fetch_pull_request_commits(context=context, ref=ref)
        if commits:
            latest_diff = await fetch_commit_diff(
                context=context,
                workspace=ref.workspace,
                repo_slug=ref.repo_slug,
                commit_hash=commits[0].hash,
                path=file_path,
            )
            text = record("latest_commit", latest_diff)
        else:
            text = record("latest_commit", None)
    except (BitbucketApiError, httpx.HTTPError) as error:
        text = record("latest_commit", None, error)
    if text is not None:
        return resolved("latest_commit", text)

    full_diff = await _run_strategies(fetch_context, DIFF_STRATEGIES)
    if full_diff.access_limited:
        return PullRequestDiff(
            text=full_diff.text,
            strategy=None,
            attempts=tuple(attempts) + full_diff.attempts,
            snapshot=full_diff.snapshot,
        )
    attempts.append(StrategyAttempt(strategy="full_diff_extracted", failure=None))
    return resolved("full_diff_extracted", extract_file_diff(full_diff.text, file_path))


@dataclass(frozen=True, slots=True)
class DiffView:
    """Diff text ready to return to a caller."""

    text: str
    truncated: bool
    files: tuple[str, ...]
    access_limited: bool
    estimated_tokens: float


async def _load_summary_stats(
    *, context: BitbucketContext, ref: PullRequestRef, diff_text: str
) -> tuple[FileChangeStat, ...]:
    try:
        return await fetch_pull_request_diffstat(context=context, ref=ref)
    except BitbucketApiError as error:
        if error.status_code != 404:
            raise
        logger.info("Diffstat unavailable for PR #%d; parsing diff text instead", ref.pr_id)
        return parse_diff_file_stats(diff_text)


async def fetch_pull_request_diff_view(
    *,
    context: BitbucketContext,
    ref: PullRequestRef,
    file_path: str | None = None,
    context_lines: int | None = None,
    ignore_whitespace: bool = False,
    max_size: int = DEFAULT_MAX_TOKENS,
    chars_per_token: float = DEFAULT_CHARS_PER_TOKEN,
    relevance_check: RelevanceCheck | None = None,
) -> DiffView:
    """Fetch a PR diff, scoped to one file or summarized when over budget."""
    if file_path:
        file_diff = await fetch_file_specific_diff(
            context=context, ref=ref, file_path=file_path, relevance_check=relevance_check
        )
        text = file_diff.text
        if not file_diff.access_limited:
            text = apply_diff_filters(
                text, ignore_whitespace=ignore_whitespace, context_lines=context_lines
            )
        return DiffView(
            text=text,
            truncated=False,
            files=(file_path,),
            access_limited=file_diff.access_limited,
            estimated_tokens=estimate_tokens(text, chars_per_token=chars_per_token),
        )

    full_diff = await fetch_pull_request_diff(
        context=context, ref=ref, relevance_check=relevance_check
    )
    tokens = estimate_tokens(full_diff.text, chars_per_token=chars_per_token)
    if full_diff.access_limited:
        return DiffView(
            text=full_diff.text,
            truncated=False,
            files=(),
            access_limited=True,
            estimated_tokens=tokens,
        )

    if tokens > max_size:
        logger.info(
            "PR #%d diff is ~%d tokens (limit %d); returning summary", ref.pr_id, tokens, max_size
        )
        stats = await _load_summary_stats(context=context, ref=ref, diff_text=full_diff.text)
        return DiffView(
            text=render_too_large_summary(
                pr_id=ref.pr_id, stats=stats, estimated_tokens=tokens, max_size=max_size
            ),
            truncated=True,
            files=tuple(stat.path for stat in stats),
            access_limited=False,
            estimated_tokens=tokens,
        )

    return DiffView(
        text=apply_diff_filters(
            full_diff.text, ignore_whitespace=ignore_whitespace, context_lines=context_lines
        ),
        truncated=False,
        files=(),
        access_limited=False,
        estimated_tokens=tokens,
    )


@dataclass(frozen=True, slots=True)
class FileStatsResult:
    """Per-file stats for a PR, or the access-limited report."""

    stats: tuple[FileChangeStat, ...]
    source: str
    report: str | None = None

    @property
    def access_limited(self) -> bool:
        return self.report is not None


async def fetch_pull_request_file_stats(
    *,
    context: BitbucketContext,
    ref: PullRequestRef,
    relevance_check: RelevanceCheck | None = None,
) -> FileStatsResult:
    """Diffstat endpoint first, then stats parsed from the resolved diff."""
    try:
        stats = await fetch_pull_request_diffstat(context=context, ref=ref)
        return FileStatsResult(stats=stats, source="diffstat")
    except BitbucketApiError as error:
        if error.status_code != 404:
            raise
        logger.info("Diffstat endpoint returned 404 for PR #%d; parsing diff", ref.pr_id)

    full_diff = await fetch_pull_request_diff(
        context=context, ref=ref, relevance_check=relevance_check
    )
    if full_diff.access_limited:
        return FileStatsResult(stats=(), source="access_limited", report=full_diff.text)
    return FileStatsResult(stats=parse_diff_file_stats(full_diff.text), source=full_diff.strategy or "")
