"""Detection of pull request transitions between two runs.

Everything here is a pure function of the previous and current snapshots
plus a few side tables; deciding whether an event was already notified is
the ledger's job, not the detector's.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from prbar.cache import PRKey
from prbar.github_client import PullDetail
from prbar.ledger import make_key
from prbar.snapshot import (
    FLAG_ASSIGNED_ME,
    FLAG_REQUESTED_ME,
    FLAG_REQUESTED_TEAM,
    PullRequestRecord,
    Snapshot,
    minimal_record,
)

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Kinds of transitions, valued by their ledger key prefix."""

    NEW_PR = "new"
    REQUESTED_TEAM = FLAG_REQUESTED_TEAM
    REQUESTED_ME = FLAG_REQUESTED_ME
    ASSIGNED_ME = FLAG_ASSIGNED_ME
    REREQUESTED = "rerequest"
    QUEUE_ENTERED = "queue-enter"
    QUEUE_LEFT = "queue-leave"
    MERGED = "merged"
    NEW_COMMENT = "comment"
    APPROVAL_DISMISSED = "approval-dismissed"
    MENTIONED = "mentioned"


FLAG_EVENTS = (
    (FLAG_REQUESTED_TEAM, EventKind.REQUESTED_TEAM),
    (FLAG_REQUESTED_ME, EventKind.REQUESTED_ME),
    (FLAG_ASSIGNED_ME, EventKind.ASSIGNED_ME),
)


@dataclass(frozen=True)
class Event:
    """A detected transition of one pull request."""

    kind: EventKind
    repo: str
    number: int
    discriminator: str
    title: str
    url: str
    author: str = ""
    comment_author: str = ""
    comment_body: str = ""

    @property
    def pr(self) -> PRKey:
        return self.repo, self.number

    @property
    def key(self) -> str:
        return make_key(self.kind.value, self.pr)


@dataclass
class DetectionInput:
    """Everything the detector compares.

    ``None`` for a side table means it wasn't available on the previous run
    (or this run didn't produce it), so events depending on it are skipped.
    """

    previous: Snapshot
    current: Snapshot
    previous_mentioned: set[PRKey] | None = None
    current_mentioned: set[PRKey] | None = None
    previous_queue: set[PRKey] | None = None
    previous_rerequest: dict[PRKey, str] = field(default_factory=dict)
    current_rerequest: dict[PRKey, str] = field(default_factory=dict)
    viewer: str = ""


MergeVerifier = Callable[[PRKey], PullDetail | None]


def lookup_row(key: PRKey, current: Snapshot, previous: Snapshot) -> PullRequestRecord:
    """Return the freshest known row for ``key``, synthesizing one if needed."""
    return current.get(key) or previous.get(key) or minimal_record(key)


def _event(kind: EventKind, record: PullRequestRecord, discriminator: str, **extra) -> Event:
    return Event(
        kind=kind,
        repo=record.repo,
        number=record.number,
        discriminator=discriminator,
        title=record.title,
        url=record.url,
        author=record.author,
        **extra,
    )


def detect_new(inp: DetectionInput) -> list[Event]:
    events = []
    for key in sorted(set(inp.current) - set(inp.previous)):
        record = inp.current[key]
        stamp = record.created_at or record.updated_at
        if stamp:
            events.append(_event(EventKind.NEW_PR, record, stamp))
    return events


def detect_flags(inp: DetectionInput) -> list[Event]:
    """Assignment flags that switched on for PRs known to both runs."""
    events = []
    for key in sorted(set(inp.current) & set(inp.previous)):
        current, previous = inp.current[key], inp.previous[key]
        if not current.updated_at:
            continue
        for flag, kind in FLAG_EVENTS:
            if current.has_flag(flag) and not previous.has_flag(flag):
                events.append(_event(kind, current, current.updated_at))
    return events


def detect_rerequests(inp: DetectionInput) -> list[Event]:
    """Review requests whose newest timestamp moved past the recorded one."""
    events = []
    for key in sorted(inp.current_rerequest):
        stamp = inp.current_rerequest[key]
        before = inp.previous_rerequest.get(key)
        if before and stamp > before:
            record = lookup_row(key, inp.current, inp.previous)
            events.append(_event(EventKind.REREQUESTED, record, stamp))
    return events


def detect_queue(inp: DetectionInput) -> list[Event]:
    events = []
    for key in sorted(set(inp.current) & set(inp.previous)):
        current, previous = inp.current[key], inp.previous[key]
        if current.in_merge_queue and not previous.in_merge_queue and current.updated_at:
            events.append(_event(EventKind.QUEUE_ENTERED, current, current.updated_at))

    if inp.previous_queue is not None:
        queued_before = inp.previous_queue
    else:
        queued_before = {key for key, record in inp.previous.items() if record.in_merge_queue}

    # A PR that left the queue and the open listing is handled as a merge.
    for key in sorted(queued_before):
        current = inp.current.get(key)
        if current is not None and not current.in_merge_queue and current.updated_at:
            events.append(_event(EventKind.QUEUE_LEFT, current, current.updated_at))
    return events


def detect_merged(inp: DetectionInput, verify_merge: MergeVerifier) -> list[Event]:
    """PRs that vanished from the open listing and are confirmed merged.

    Disappearing alone could also mean closed without merging, so each
    candidate is looked up and skipped unless it reports a merge time.
    """
    events = []
    for key in sorted(set(inp.previous) - set(inp.current)):
        detail = verify_merge(key)
        if detail is None or not detail.merged or not detail.merged_at:
            logger.debug("%s#%s left the listing without a confirmed merge", *key)
            continue
        previous = inp.previous[key]
        record = PullRequestRecord(
            repo=previous.repo,
            number=previous.number,
            title=detail.title or previous.title,
            url=detail.url or previous.url,
            author=previous.author,
        )
        events.append(_event(EventKind.MERGED, record, detail.merged_at))
    return events


def detect_comments(inp: DetectionInput) -> list[Event]:
    events = []
    viewer = inp.viewer.lower()
    for key in sorted(set(inp.current) & set(inp.previous)):
        comment = inp.current[key].latest_comment
        if comment is None or not comment.id:
            continue
        before = inp.previous[key].latest_comment
        if before is not None and before.id == comment.id:
            continue
        if viewer and comment.author.lower() == viewer:
            continue
        events.append(
            _event(
                EventKind.NEW_COMMENT,
                inp.current[key],
                comment.id,
                comment_author=comment.author,
                comment_body=comment.body,
            )
        )
    return events


def detect_dismissals(inp: DetectionInput) -> list[Event]:
    """The viewer's approval turned into a dismissed review."""
    events = []
    for key in sorted(set(inp.current) & set(inp.previous)):
        current, previous = inp.current[key], inp.previous[key]
        if current.viewer_review_state != "DISMISSED" or not current.viewer_had_approved:
            continue
        if not current.viewer_review_at:
            continue
        if (
            previous.viewer_review_state == "DISMISSED"
            and previous.viewer_review_at == current.viewer_review_at
        ):
            continue
        events.append(_event(EventKind.APPROVAL_DISMISSED, current, current.viewer_review_at))
    return events


def detect_mentions(inp: DetectionInput) -> list[Event]:
    if inp.previous_mentioned is None or inp.current_mentioned is None:
        return []
    events = []
    for key in sorted(inp.current_mentioned - inp.previous_mentioned):
        record = lookup_row(key, inp.current, inp.previous)
        if record.updated_at:
            events.append(_event(EventKind.MENTIONED, record, record.updated_at))
    return events


def detect_events(inp: DetectionInput, verify_merge: MergeVerifier) -> list[Event]:
    """Compare two runs and list every transition, in a stable order.

    Args:
        inp: Previous and current snapshots with their side tables.
        verify_merge: Point lookup used to confirm merges.

    Returns:
        Events grouped by kind, each group ordered by PR identity.
    """
    events = []
    events.extend(detect_new(inp))
    events.extend(detect_flags(inp))
    events.extend(detect_rerequests(inp))
    events.extend(detect_queue(inp))
    events.extend(detect_merged(inp, verify_merge))
    events.extend(detect_comments(inp))
    events.extend(detect_dismissals(inp))
    events.extend(detect_mentions(inp))
    logger.info("Detected %d events", len(events))
    return events
