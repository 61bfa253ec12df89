"""Tests for enrichment module."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from prbar.enrichment import (
    COMMENT_BODY_LIMIT,
    EMPTY_ENRICHMENT,
    EnrichmentCache,
    count_approvals,
    count_conversation,
    derive_enrichment,
    viewer_review,
)
from prbar.github_client import Comment, PullData, Review


def pull_data(reviews: list[Review] | None = None, comment: Comment | None = None) -> PullData:
    return PullData(
        issue_comment_count=2,
        thread_comment_count=3,
        reviews=reviews or [],
        latest_comment=comment,
    )


class TestCountApprovals:
    """Tests for count_approvals."""

    def test_latest_state_per_reviewer_wins(self) -> None:
        """Should drop an approval superseded by a later change request."""
        reviews = [
            Review("alice", "APPROVED", "2024-01-01T00:00:00Z"),
            Review("alice", "CHANGES_REQUESTED", "2024-01-02T00:00:00Z"),
            Review("bob", "APPROVED", "2024-01-03T00:00:00Z"),
        ]

        assert count_approvals(reviews) == 1

    def test_order_is_by_submission_time(self) -> None:
        """Should reduce by submitted time, not list order."""
        reviews = [
            Review("alice", "APPROVED", "2024-01-05T00:00:00Z"),
            Review("alice", "CHANGES_REQUESTED", "2024-01-02T00:00:00Z"),
        ]

        assert count_approvals(reviews) == 1

    def test_logins_compare_case_insensitively(self) -> None:
        """Should treat Alice and alice as the same reviewer."""
        reviews = [
            Review("Alice", "APPROVED", "2024-01-01T00:00:00Z"),
            Review("alice", "APPROVED", "2024-01-02T00:00:00Z"),
        ]

        assert count_approvals(reviews) == 1

    def test_pending_reviews_ignored(self) -> None:
        """Should not let a pending draft review hide an approval."""
        reviews = [
            Review("alice", "APPROVED", "2024-01-01T00:00:00Z"),
            Review("alice", "PENDING", "2024-01-02T00:00:00Z"),
        ]

        assert count_approvals(reviews) == 1


class TestDerive:
    """Tests for derived fields."""

    def test_conversation_counts_review_bodies(self) -> None:
        """Should add reviews with a body to comment counts."""
        data = pull_data(
            reviews=[
                Review("alice", "COMMENTED", "2024-01-01T00:00:00Z", body="nit"),
                Review("bob", "APPROVED", "2024-01-01T00:00:00Z", body="  "),
            ]
        )

        assert count_conversation(data) == 6

    def test_viewer_review_dismissed_after_approval(self) -> None:
        """Should report the latest state and whether the viewer approved before."""
        reviews = [
            Review("me", "APPROVED", "2024-01-01T00:00:00Z"),
            Review("me", "DISMISSED", "2024-01-02T00:00:00Z"),
            Review("bob", "APPROVED", "2024-01-03T00:00:00Z"),
        ]

        assert viewer_review(reviews, "me") == ("DISMISSED", "2024-01-02T00:00:00Z", True)

    def test_viewer_review_without_viewer(self) -> None:
        """Should return empty values when the viewer is unknown."""
        assert viewer_review([Review("me", "APPROVED", "t")], "") == ("", "", False)

    def test_long_comment_truncated(self) -> None:
        """Should cap stored comment bodies."""
        comment = Comment(id="IC_1", author="bob", body="x" * (COMMENT_BODY_LIMIT + 50))

        enrichment = derive_enrichment(pull_data(comment=comment), "me")

        assert len(enrichment.latest_comment.body) == COMMENT_BODY_LIMIT


class TestEnrichmentCache:
    """Tests for EnrichmentCache."""

    @pytest.fixture
    def client(self) -> MagicMock:
        client = MagicMock()
        client.fetch_pull_data.return_value = pull_data(
            reviews=[Review("bob", "APPROVED", "2024-01-01T00:00:00Z")],
            comment=Comment(id="IC_1", author="bob", body="multi\nline"),
        )
        return client

    def test_refetches_only_when_updated_at_changes(self, client: MagicMock, tmp_path: Path) -> None:
        """Should refetch exactly once when updatedAt moves."""
        cache = EnrichmentCache(client, tmp_path, "me")

        cache.enrich("acme/app", 7, "2024-01-01T00:00:00Z")
        cache.enrich("acme/app", 7, "2024-01-02T00:00:00Z")

        assert client.fetch_pull_data.call_count == 2

    def test_hit_makes_no_call(self, client: MagicMock, tmp_path: Path) -> None:
        """Should serve a matching entry from disk."""
        cache = EnrichmentCache(client, tmp_path, "me")
        first = cache.enrich("acme/app", 7, "2024-01-01T00:00:00Z")

        second = EnrichmentCache(client, tmp_path, "me").enrich(
            "acme/app", 7, "2024-01-01T00:00:00Z"
        )

        assert client.fetch_pull_data.call_count == 1
        assert second.approval_count == first.approval_count == 1
        assert second.latest_comment == Comment(id="IC_1", author="bob", body="multi line")

    def test_entry_file_name(self, client: MagicMock, tmp_path: Path) -> None:
        """Should store one file per PR."""
        cache = EnrichmentCache(client, tmp_path, "me")

        cache.enrich("acme/app", 7, "2024-01-01T00:00:00Z")

        assert (tmp_path / "acme_app-7.tsv").exists()

    def test_failure_returns_empty_and_is_not_cached(
        self, client: MagicMock, tmp_path: Path
    ) -> None:
        """Should return zeros on failure and try again next time."""
        client.fetch_pull_data.return_value = None
        cache = EnrichmentCache(client, tmp_path, "me")

        result = cache.enrich("acme/app", 7, "2024-01-01T00:00:00Z")
        cache.enrich("acme/app", 7, "2024-01-01T00:00:00Z")

        assert result == EMPTY_ENRICHMENT
        assert client.fetch_pull_data.call_count == 2

    def test_corrupt_entry_refetches(self, client: MagicMock, tmp_path: Path) -> None:
        """Should ignore an unreadable entry."""
        (tmp_path / "acme_app-7.tsv").write_text("garbage\n")
        cache = EnrichmentCache(client, tmp_path, "me")

        cache.enrich("acme/app", 7, "2024-01-01T00:00:00Z")

        assert client.fetch_pull_data.call_count == 1
