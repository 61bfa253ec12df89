"""Persisted record of which events have already been notified."""

import logging
import re
import threading
from collections.abc import Collection
from pathlib import Path

from prbar.cache import PRKey, format_pr_key, parse_pr_key, read_rows, write_rows

logger = logging.getLogger(__name__)

TIMESTAMP_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$")

# Kinds whose discriminator is an opaque identity rather than a timestamp.
IDENTITY_KINDS = frozenset({"comment"})


def make_key(kind: str, pr: PRKey) -> str:
    """Build a ledger key such as ``merged:acme/app#42``."""
    return f"{kind}:{format_pr_key(pr)}"


def split_key(key: str) -> tuple[str, PRKey] | None:
    """Split a ledger key into its kind and PR identity, or None if malformed."""
    kind, sep, rest = key.partition(":")
    if not sep or not kind:
        return None
    pr = parse_pr_key(rest)
    if pr is None:
        return None
    return kind, pr


def is_timestamp(value: str) -> bool:
    return bool(TIMESTAMP_RE.match(value))


def is_valid(kind: str, value: str) -> bool:
    """Check that a discriminator is well-formed for its kind."""
    if not value or "\t" in value or "\n" in value:
        return False
    if kind in IDENTITY_KINDS:
        return True
    return is_timestamp(value)


def advances(kind: str, stored: str | None, value: str) -> bool:
    """Return whether ``value`` is a fresh occurrence compared to ``stored``.

    Timestamps must be strictly newer; identities only need to differ. A
    missing or malformed stored value never blocks a fresh one.
    """
    if stored is None or not is_valid(kind, stored):
        return True
    if kind in IDENTITY_KINDS:
        return value != stored
    # ISO-8601 UTC with a fixed width compares correctly as text
    return value > stored


class NotificationLedger:
    """Map of event key to the last discriminator that was notified.

    Safe to update from several threads within a run; each write is
    checked so that a key never moves backwards.
    """

    def __init__(self, entries: dict[str, str] | None = None) -> None:
        self._entries: dict[str, str] = dict(entries or {})
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def items(self) -> list[tuple[str, str]]:
        with self._lock:
            return sorted(self._entries.items())

    def get(self, key: str) -> str | None:
        """Return the stored discriminator, treating malformed values as absent."""
        parts = split_key(key)
        with self._lock:
            value = self._entries.get(key)
        if value is None or parts is None or not is_valid(parts[0], value):
            return None
        return value

    def is_fresh(self, key: str, value: str) -> bool:
        """Return whether notifying ``value`` for ``key`` would be a new occurrence."""
        parts = split_key(key)
        if parts is None or not is_valid(parts[0], value):
            return False
        with self._lock:
            stored = self._entries.get(key)
        return advances(parts[0], stored, value)

    def set(self, key: str, value: str) -> bool:
        """Record ``value`` for ``key`` if it is well-formed and advances.

        Returns:
            True if the entry was written, False if it was rejected.
        """
        parts = split_key(key)
        if parts is None:
            logger.warning("Skipping malformed ledger key: %r", key)
            return False

        kind = parts[0]
        if not is_valid(kind, value):
            logger.warning("Skipping malformed discriminator for %s: %r", key, value)
            return False

        with self._lock:
            if not advances(kind, self._entries.get(key), value):
                logger.debug("Ledger already past %s for %s", value, key)
                return False
            self._entries[key] = value
        return True

    def gc(self, keep: Collection[PRKey]) -> int:
        """Drop entries whose PR is not in ``keep``.

        Args:
            keep: Identities present in the current or previous snapshot.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            stale = []
            for key in self._entries:
                parts = split_key(key)
                if parts is None or parts[1] not in keep:
                    stale.append(key)
            for key in stale:
                del self._entries[key]
        if stale:
            logger.info("Ledger GC removed %d entries", len(stale))
        return len(stale)

    @classmethod
    def load(cls, path: Path) -> "NotificationLedger":
        """Load a ledger file; a missing file gives an empty ledger."""
        entries = {}
        for row in read_rows(path) or []:
            if len(row) < 2 or split_key(row[0]) is None:
                logger.warning("Ignoring malformed ledger row: %r", "\t".join(row))
                continue
            entries[row[0]] = row[1]
        return cls(entries)

    def save(self, path: Path) -> None:
        write_rows(path, [[key, value] for key, value in self.items()])
