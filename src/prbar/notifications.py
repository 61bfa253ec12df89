"""macOS notifications for pull request events."""

import importlib
import logging
from dataclasses import dataclass
from types import ModuleType
from typing import Callable

from prbar.cache import PRKey
from prbar.config import Config
from prbar.events import Event, EventKind
from prbar.ledger import NotificationLedger

logger = logging.getLogger(__name__)


def load_notifier() -> ModuleType | None:
    """Import pync, or return None where it can't send notifications."""
    try:
        return importlib.import_module("pync")
    except ImportError:
        logger.info("pync is not installed; desktop notifications are off")
    except Exception as e:
        # pync raises a bare Exception when terminal-notifier is missing
        logger.info("pync is unusable; desktop notifications are off: %s", e)
    return None


pync = load_notifier()

COMMENT_PREVIEW_LIMIT = 200

# Which on/off switch in the config governs each kind.
PREFERENCE_BY_KIND = {
    EventKind.NEW_PR: "new_pr",
    EventKind.REQUESTED_TEAM: "newly_requested",
    EventKind.REQUESTED_ME: "newly_requested",
    EventKind.ASSIGNED_ME: "newly_requested",
    EventKind.REREQUESTED: "rerequested",
    EventKind.QUEUE_ENTERED: "queue",
    EventKind.QUEUE_LEFT: "queue",
    EventKind.MERGED: "merged",
    EventKind.NEW_COMMENT: "new_comment",
    EventKind.APPROVAL_DISMISSED: "approval_dismissed",
    EventKind.MENTIONED: "mentioned",
}

Sink = Callable[[str, str, str, str, str], None]


@dataclass
class Notification:
    """Text of one desktop notification."""

    group: str
    title: str
    subtitle: str
    message: str
    url: str


def group_key(kind: EventKind, pr: PRKey) -> str:
    """Stable group id so a later notification replaces the earlier one."""
    repo, number = pr
    owner, _, name = repo.partition("/")
    return f"prbar-{kind.value}-{owner}-{name}-{number}"


def notify(group: str, title: str, subtitle: str, message: str, url: str) -> None:
    """Send a macOS notification through terminal-notifier.

    Does nothing when the notifier isn't available; failures never reach
    the caller.

    Args:
        group: Notifications sharing a group replace each other.
        title: Bold first line.
        subtitle: Second line.
        message: Body text.
        url: Opened when the notification is clicked.
    """
    if pync is None:
        logger.debug("Notifier unavailable, dropping: %s", title)
        return
    try:
        pync.notify(
            message,
            title=title,
            subtitle=subtitle,
            group=group,
            open=url,
            sound="default",
        )
    except Exception as e:
        # Don't crash if notifications fail
        logger.debug("Notification failed: %s", e)


def preview(text: str, limit: int = COMMENT_PREVIEW_LIMIT) -> str:
    """Collapse whitespace and cut ``text`` to ``limit`` characters."""
    flat = " ".join(text.split())
    if len(flat) > limit:
        return flat[:limit] + "..."
    return flat


def format_event(event: Event) -> Notification:
    """Build the notification text for an event."""
    subtitle = f"{event.repo}#{event.number}"
    message = event.title

    if event.kind == EventKind.NEW_PR:
        title = f"New PR by {event.author or 'unknown'}"
    elif event.kind == EventKind.REQUESTED_TEAM:
        title = "Review requested to your team"
    elif event.kind in (EventKind.REQUESTED_ME, EventKind.ASSIGNED_ME):
        title = "Review requested"
    elif event.kind == EventKind.REREQUESTED:
        title = "Review re-requested"
    elif event.kind == EventKind.QUEUE_ENTERED:
        title = "Pushed to merge queue"
    elif event.kind == EventKind.QUEUE_LEFT:
        title = "Removed from merge queue"
    elif event.kind == EventKind.MERGED:
        title = "PR Merged"
    elif event.kind == EventKind.NEW_COMMENT:
        title = f"New comment by {event.comment_author or 'unknown'}"
        subtitle = f"{event.repo}#{event.number} {event.title}"
        message = preview(event.comment_body) or event.title
    elif event.kind == EventKind.APPROVAL_DISMISSED:
        title = "Your approval was dismissed"
    else:
        title = "You were mentioned"

    return Notification(
        group=group_key(event.kind, event.pr),
        title=title,
        subtitle=subtitle,
        message=message,
        url=event.url,
    )


def wants(event: Event, config: Config, raised_by_me: set[PRKey], participated: set[PRKey]) -> bool:
    """Apply the per-kind switches and the merge queue audience filters."""
    if not config.notification_enabled(PREFERENCE_BY_KIND[event.kind]):
        return False

    if event.kind in (EventKind.QUEUE_ENTERED, EventKind.QUEUE_LEFT):
        audiences = []
        if config.notification_enabled("queue_raised_by_me"):
            audiences.append(raised_by_me)
        if config.notification_enabled("queue_participated"):
            audiences.append(participated)
        return any(event.pr in audience for audience in audiences)
    return True


def dispatch(
    events: list[Event],
    ledger: NotificationLedger,
    config: Config,
    raised_by_me: set[PRKey] | None = None,
    participated: set[PRKey] | None = None,
    sink: Sink = notify,
) -> list[Event]:
    """Send every wanted event the ledger hasn't seen, then record it.

    Args:
        events: Detected events, in the order they should be sent.
        ledger: Ledger consulted and updated per event.
        config: Notification switches.
        raised_by_me: PRs authored by the viewer (queue filter).
        participated: PRs the viewer took part in (queue filter).
        sink: Callable receiving (group, title, subtitle, message, url).

    Returns:
        The events that were sent.
    """
    raised_by_me = raised_by_me or set()
    participated = participated or set()
    sent = []
    for event in events:
        if not wants(event, config, raised_by_me, participated):
            continue
        if not ledger.is_fresh(event.key, event.discriminator):
            continue

        note = format_event(event)
        sink(note.group, note.title, note.subtitle, note.message, note.url)
        ledger.set(event.key, event.discriminator)
        sent.append(event)

    if sent:
        logger.info("Sent %d notifications", len(sent))
    return sent
