"""Per-PR enrichment (conversation, approvals, latest comment, my review).

Entries are cached on disk keyed by the PR's ``updatedAt``: any activity on
a PR changes that timestamp, so a matching entry can be reused without a
network call.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from prbar.cache import atomic_write_text, sanitize_field
from prbar.github_client import Comment, GitHubClient, PullData, Review

logger = logging.getLogger(__name__)

COMMENT_BODY_LIMIT = 500


@dataclass(frozen=True)
class Enrichment:
    """Secondary facts about a PR, derived from its reviews and comments."""

    conversation_count: int = 0
    approval_count: int = 0
    latest_comment: Comment | None = None
    my_review_state: str = ""
    my_review_at: str = ""
    my_had_approved: bool = False
    fetched: bool = True


EMPTY_ENRICHMENT = Enrichment(fetched=False)


def count_approvals(reviews: list[Review]) -> int:
    """Count reviewers whose most recent review is an approval.

    Reviews are reduced per reviewer login, keeping only the latest submitted
    state, so an approval followed by a change request doesn't count.
    """
    latest: dict[str, str] = {}
    for review in sorted(reviews, key=lambda r: r.submitted_at):
        if not review.author or review.state == "PENDING":
            continue
        latest[review.author.lower()] = review.state
    return sum(1 for state in latest.values() if state == "APPROVED")


def count_conversation(data: PullData) -> int:
    """Issue comments + inline review comments + reviews that carry a body."""
    bodies = sum(1 for review in data.reviews if review.body.strip())
    return data.issue_comment_count + data.thread_comment_count + bodies


def viewer_review(reviews: list[Review], viewer: str) -> tuple[str, str, bool]:
    """Return (latest state, its timestamp, ever approved) for ``viewer``."""
    if not viewer:
        return "", "", False

    mine = [r for r in reviews if r.author.lower() == viewer.lower() and r.state != "PENDING"]
    if not mine:
        return "", "", False

    latest = max(mine, key=lambda r: r.submitted_at)
    had_approved = any(r.state == "APPROVED" for r in mine)
    return latest.state, latest.submitted_at, had_approved


def derive_enrichment(data: PullData, viewer: str) -> Enrichment:
    state, submitted_at, had_approved = viewer_review(data.reviews, viewer)
    comment = data.latest_comment
    if comment is not None and len(comment.body) > COMMENT_BODY_LIMIT:
        comment = Comment(id=comment.id, author=comment.author, body=comment.body[:COMMENT_BODY_LIMIT])
    return Enrichment(
        conversation_count=count_conversation(data),
        approval_count=count_approvals(data.reviews),
        latest_comment=comment,
        my_review_state=state,
        my_review_at=submitted_at,
        my_had_approved=had_approved,
    )


def _encode(updated_at: str, enrichment: Enrichment) -> str:
    comment = enrichment.latest_comment
    fields = [
        updated_at,
        enrichment.conversation_count,
        enrichment.approval_count,
        comment.id if comment else "",
        comment.author if comment else "",
        comment.body if comment else "",
        enrichment.my_review_state,
        enrichment.my_review_at,
        "true" if enrichment.my_had_approved else "false",
    ]
    return "\t".join(sanitize_field(value) for value in fields) + "\n"


def _decode(line: str) -> tuple[str, Enrichment] | None:
    fields = line.rstrip("\n").split("\t")
    if len(fields) != 9:
        return None
    updated_at, conv, appr, cid, cauthor, cbody, state, ts, had = fields
    if not conv.isdigit() or not appr.isdigit():
        return None
    comment = Comment(id=cid, author=cauthor, body=cbody) if cid else None
    return updated_at, Enrichment(
        conversation_count=int(conv),
        approval_count=int(appr),
        latest_comment=comment,
        my_review_state=state,
        my_review_at=ts,
        my_had_approved=had == "true",
    )


class EnrichmentCache:
    """Cache of :class:`Enrichment` values, one file per PR."""

    def __init__(self, client: GitHubClient, cache_dir: Path, viewer: str) -> None:
        """Initialize the cache.

        Args:
            client: Client used for the consolidated activity query.
            cache_dir: Directory holding one entry file per PR.
            viewer: Login whose review state is tracked.
        """
        self._client = client
        self._cache_dir = cache_dir
        self._viewer = viewer

    def entry_path(self, repo: str, number: int) -> Path:
        return self._cache_dir / f"{repo.replace('/', '_')}-{number}.tsv"

    def load(self, repo: str, number: int) -> tuple[str, Enrichment] | None:
        """Return the stored (updated_at, enrichment) pair, if readable."""
        path = self.entry_path(repo, number)
        if not path.exists():
            return None
        try:
            return _decode(path.read_text(encoding="utf-8", errors="replace"))
        except OSError:
            return None

    def store(self, repo: str, number: int, updated_at: str, enrichment: Enrichment) -> None:
        try:
            atomic_write_text(self.entry_path(repo, number), _encode(updated_at, enrichment))
        except OSError as e:
            logger.warning("Cannot store enrichment for %s#%s: %s", repo, number, e)

    def enrich(self, repo: str, number: int, updated_at: str) -> Enrichment:
        """Return enrichment for a PR, refetching only when ``updated_at`` moved.

        Returns:
            Cached or freshly computed Enrichment; EMPTY_ENRICHMENT when the
            query fails (the failure isn't cached).
        """
        if updated_at:
            cached = self.load(repo, number)
            if cached is not None and cached[0] == updated_at:
                return cached[1]

        data = self._client.fetch_pull_data(repo, number)
        if data is None:
            logger.warning("Enrichment failed for %s#%s", repo, number)
            return EMPTY_ENRICHMENT

        enrichment = derive_enrichment(data, self._viewer)
        if updated_at:
            self.store(repo, number, updated_at, enrichment)
        return enrichment
