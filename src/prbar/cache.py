"""Flat-file state kept between plugin runs.

Every table is tab-separated with one record per line. Writes go to a
temporary file in the same directory and are renamed into place, so a run
starting concurrently never reads a half-written file.
"""

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

PRKey = tuple[str, int]


def format_pr_key(key: PRKey) -> str:
    """Format an identity as ``owner/repo#123``."""
    repo, number = key
    return f"{repo}#{number}"


def parse_pr_key(text: str) -> PRKey | None:
    """Parse ``owner/repo#123`` back into an identity.

    Returns:
        The (repo, number) tuple, or None when the text is not a PR key.
    """
    repo, sep, number = text.rpartition("#")
    if not sep or "/" not in repo or not number.isdigit():
        return None
    if repo.startswith("null") or repo.endswith("/null"):
        return None
    return repo, int(number)


def sanitize_field(value: object) -> str:
    """Flatten a value so it fits in one TSV column."""
    if value is None:
        return ""
    return str(value).replace("\t", " ").replace("\r", " ").replace("\n", " ")


@dataclass(frozen=True)
class StatePaths:
    """Locations of every persisted file under one cache directory."""

    base: Path

    @property
    def snapshot(self) -> Path:
        return self.base / "prbar.state.tsv"

    @property
    def ledger(self) -> Path:
        return self.base / "prbar.notified.tsv"

    @property
    def mentioned(self) -> Path:
        return self.base / "prbar.mentioned.tsv"

    @property
    def queue(self) -> Path:
        return self.base / "prbar.queue.tsv"

    @property
    def rerequest(self) -> Path:
        return self.base / "prbar.rerequest.tsv"

    @property
    def rerequest_hits(self) -> Path:
        return self.base / "prbar.rerequest.hits.tsv"

    @property
    def pr_data_dir(self) -> Path:
        return self.base / "pr-data"

    @property
    def avatars_dir(self) -> Path:
        return self.base / "avatars"

    @property
    def team_members_dir(self) -> Path:
        return self.base / "team-members"


def get_state_paths(cache_dir: Path) -> StatePaths:
    """Return the state layout rooted at ``cache_dir``."""
    return StatePaths(base=cache_dir)


def atomic_write_text(path: Path, text: str) -> None:
    """Write text to ``path`` via a temporary file and an atomic rename.

    Args:
        path: Destination file.
        text: Full file contents.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Binary variant of :func:`atomic_write_text`."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def read_rows(path: Path) -> list[list[str]] | None:
    """Read a TSV table.

    Returns:
        List of rows (blank lines skipped), or None if the file doesn't exist
        or can't be read.
    """
    if not path.exists():
        return None
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.warning("Cannot read %s: %s", path, e)
        return None
    return [line.split("\t") for line in text.splitlines() if line.strip()]


def write_rows(path: Path, rows: list[list[object]]) -> None:
    """Write a TSV table atomically, sanitizing every field."""
    lines = ["\t".join(sanitize_field(value) for value in row) for row in rows]
    atomic_write_text(path, "".join(f"{line}\n" for line in lines))


def load_key_set(path: Path) -> set[PRKey] | None:
    """Load a set of PR identities stored as ``repo<TAB>number`` rows.

    Returns:
        The set, or None when the file doesn't exist yet (first run).
    """
    rows = read_rows(path)
    if rows is None:
        return None
    keys = set()
    for row in rows:
        if len(row) >= 2 and row[1].strip().isdigit():
            keys.add((row[0], int(row[1])))
    return keys


def save_key_set(path: Path, keys: set[PRKey]) -> None:
    """Persist a set of PR identities in a stable order."""
    write_rows(path, [[repo, number] for repo, number in sorted(keys)])


def load_timestamp_map(path: Path) -> dict[PRKey, str] | None:
    """Load ``repo<TAB>number<TAB>timestamp`` rows.

    Returns:
        Mapping of identity to timestamp, or None when the file doesn't exist.
    """
    rows = read_rows(path)
    if rows is None:
        return None
    mapping = {}
    for row in rows:
        if len(row) >= 3 and row[1].strip().isdigit() and row[2]:
            mapping[(row[0], int(row[1]))] = row[2]
    return mapping


def save_timestamp_map(path: Path, mapping: dict[PRKey, str]) -> None:
    """Persist an identity to timestamp mapping in a stable order."""
    write_rows(path, [[repo, number, ts] for (repo, number), ts in sorted(mapping.items())])
