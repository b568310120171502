"""Shared pytest fixtures and test-run configuration."""

from __future__ import annotations

import os
from collections.abc import Callable

import httpx
import pytest
from bitbucket_review.bitbucket_client import BitbucketContext, BitbucketCredentials
from bitbucket_review.cache import TTLCache
from bitbucket_review.transport import BitbucketTransport

Handler = Callable[[httpx.Request], httpx.Response]


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add custom pytest options for integration test execution."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run tests marked as integration (live Bitbucket API).",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip integration tests unless explicitly enabled."""
    run_integration = config.getoption("--run-integration")
    env_enabled = os.getenv("RUN_INTEGRATION_TESTS") == "1"
    if run_integration or env_enabled:
        return

    skip_marker = pytest.mark.skip(
        reason=(
            "Integration tests are disabled by default. "
            "Use --run-integration or set RUN_INTEGRATION_TESTS=1."
        )
    )
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture
def recorded_sleeps(monkeypatch: pytest.MonkeyPatch) -> dict[str, list[float]]:
    """Replace transport sleeps with recorders so tests never wait."""
    sleeps: dict[str, list[float]] = {"pacing": [], "retry": []}

    async def record_pacing(seconds: float) -> None:
        sleeps["pacing"].append(seconds)

    async def record_retry(seconds: float) -> None:
        sleeps["retry"].append(seconds)

    monkeypatch.setattr("bitbucket_review.transport._sleep_for_pacing", record_pacing)
    monkeypatch.setattr("bitbucket_review.transport._sleep_for_retry", record_retry)
    return sleeps


@pytest.fixture
def make_context(
    recorded_sleeps: dict[str, list[float]],
) -> Callable[..., BitbucketContext]:
    """Build a BitbucketContext whose HTTP calls go to a mock handler."""

    def factory(
        handler: Handler, *, credentials: BitbucketCredentials | None = None
    ) -> BitbucketContext:
        client = httpx.AsyncClient(
            base_url="https://api.bitbucket.org",
            transport=httpx.MockTransport(handler),
        )
        return BitbucketContext(
            transport=BitbucketTransport(client),
            cache=TTLCache(),
            credentials=credentials,
        )

    return factory
