"""Shared test fixtures."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from prbar.config import Config
from prbar.github_client import Comment, PullRequest, SearchResult
from prbar.snapshot import PullRequestRecord


@pytest.fixture
def sample_config(tmp_path: Path) -> Config:
    """Create a sample config for testing."""
    return Config(
        github_token="ghp_test123",
        watched_repos=["acme/app", "acme/lib"],
        requested_to_teams=["acme/core"],
        cache_dir=tmp_path / "cache",
        concurrency=2,
    )


@pytest.fixture
def make_pr():
    """Factory for fetcher entries."""

    def factory(repo: str = "acme/app", number: int = 1, **kwargs) -> PullRequest:
        defaults = {
            "title": f"PR {number}",
            "url": f"https://github.com/{repo}/pull/{number}",
            "updated_at": "2024-01-01T00:00:00Z",
            "created_at": "2024-01-01T00:00:00Z",
            "author": "alice",
        }
        defaults.update(kwargs)
        return PullRequest(repo=repo, number=number, **defaults)

    return factory


@pytest.fixture
def make_record():
    """Factory for snapshot rows."""

    def factory(repo: str = "acme/app", number: int = 1, **kwargs) -> PullRequestRecord:
        defaults = {
            "title": f"PR {number}",
            "url": f"https://github.com/{repo}/pull/{number}",
            "updated_at": "2024-01-01T00:00:00Z",
            "created_at": "2024-01-01T00:00:00Z",
            "author": "alice",
        }
        defaults.update(kwargs)
        return PullRequestRecord(repo=repo, number=number, **defaults)

    return factory


@pytest.fixture
def sample_comment() -> Comment:
    return Comment(id="IC_1", author="bob", body="Looks good")


@pytest.fixture
def mock_github_client():
    """Create a mock GitHubClient for testing."""
    mock = MagicMock()
    mock.username = "me"
    mock.search.return_value = SearchResult()
    mock.search_once.return_value = SearchResult()
    mock.list_open_pulls.return_value = SearchResult()
    mock.fetch_pull_data.return_value = None
    mock.get_pull_detail.return_value = None
    mock.latest_review_request_at.return_value = None
    mock.team_members.return_value = []
    mock.unread_pull_requests.return_value = set()
    mock.involved_pull_requests.return_value = set()
    return mock
