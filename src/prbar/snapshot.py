"""Section fetching and the per-run snapshot of open pull requests."""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable

from prbar.cache import PRKey, atomic_write_text, read_rows, sanitize_field, write_rows
from prbar.config import Config
from prbar.enrichment import EMPTY_ENRICHMENT, Enrichment, EnrichmentCache
from prbar.github_client import Comment, GitHubClient, PullRequest, SearchResult

logger = logging.getLogger(__name__)

FLAG_REQUESTED_TEAM = "requested-team"
FLAG_REQUESTED_ME = "requested-me"
FLAG_ASSIGNED_ME = "assigned-me"

CAPTURE_MENTIONED = "mentioned"

STATE_COLUMNS = 17


@dataclass(frozen=True)
class PullRequestRecord:
    """One open pull request as known at the end of a run."""

    repo: str
    number: int
    title: str
    url: str
    updated_at: str = ""
    created_at: str = ""
    conversation_count: int = 0
    in_merge_queue: bool = False
    flags: frozenset[str] = frozenset()
    latest_comment: Comment | None = None
    review_decision: str = ""
    author: str = ""
    viewer_review_state: str = ""
    viewer_review_at: str = ""
    viewer_had_approved: bool = False

    @property
    def key(self) -> PRKey:
        return self.repo, self.number

    def has_flag(self, flag: str) -> bool:
        return flag in self.flags

    def to_row(self) -> list[object]:
        comment = self.latest_comment
        return [
            self.repo,
            self.number,
            self.title,
            self.url,
            self.updated_at,
            self.created_at,
            self.conversation_count,
            "true" if self.in_merge_queue else "false",
            ",".join(sorted(self.flags)),
            comment.id if comment else "",
            comment.author if comment else "",
            comment.body if comment else "",
            self.review_decision,
            self.author,
            self.viewer_review_state,
            self.viewer_review_at,
            "true" if self.viewer_had_approved else "false",
        ]

    @classmethod
    def from_row(cls, row: list[str]) -> "PullRequestRecord | None":
        """Parse a state table row; None for rows that can't be trusted."""
        if len(row) < 2 or not row[0] or not row[1].isdigit():
            return None
        row = row + [""] * (STATE_COLUMNS - len(row))
        (repo, number, title, url, updated_at, created_at, conv, in_queue, flags,
         cid, cauthor, cbody, decision, author, my_state, my_ts, had) = row[:STATE_COLUMNS]
        return cls(
            repo=repo,
            number=int(number),
            title=title,
            url=url or f"https://github.com/{repo}/pull/{number}",
            updated_at=updated_at,
            created_at=created_at,
            conversation_count=int(conv) if conv.isdigit() else 0,
            in_merge_queue=in_queue == "true",
            flags=frozenset(f for f in flags.split(",") if f),
            latest_comment=Comment(id=cid, author=cauthor, body=cbody) if cid else None,
            review_decision=decision,
            author=author,
            viewer_review_state=my_state,
            viewer_review_at=my_ts,
            viewer_had_approved=had == "true",
        )


Snapshot = dict[PRKey, PullRequestRecord]


def minimal_record(key: PRKey, title: str | None = None, url: str | None = None) -> PullRequestRecord:
    """Synthesize a row for a PR that is in neither snapshot."""
    repo, number = key
    return PullRequestRecord(
        repo=repo,
        number=number,
        title=title or f"PR #{number}",
        url=url or f"https://github.com/{repo}/pull/{number}",
    )


def load_snapshot(path: Path) -> Snapshot | None:
    """Load the previous run's snapshot.

    Returns:
        The snapshot, or None when there is no usable previous state (missing
        or empty file), which means this run only primes state.
    """
    rows = read_rows(path)
    if not rows:
        return None
    snapshot = {}
    for row in rows:
        record = PullRequestRecord.from_row(row)
        if record is not None:
            snapshot.setdefault(record.key, record)
    return snapshot or None


def save_snapshot(path: Path, snapshot: Snapshot) -> None:
    """Persist the snapshot as the next run's previous state."""
    write_rows(path, [snapshot[key].to_row() for key in sorted(snapshot)])


@dataclass
class Section:
    """A named query contributing rows to the menu and the snapshot."""

    title: str
    header_query: str
    fetch: Callable[[], SearchResult]
    group: str | None = None
    flag: str | None = None
    flags_for: Callable[[PullRequest], set[str]] | None = None
    tracked: bool = True
    capture: str | None = None
    check_my_review: bool = False
    header_link_kind: str = "pulls"


@dataclass
class SectionRow:
    """A PR rendered in a section, with everything the menu needs."""

    record: PullRequestRecord
    entry: PullRequest
    enrichment: Enrichment
    decorations: frozenset[str] = frozenset()


@dataclass
class SectionResult:
    """Rows owned by a section, in display order."""

    section: Section
    rows: list[SectionRow] = field(default_factory=list)
    totals: dict[str, int] = field(default_factory=dict)
    complete: bool = True

    @property
    def count(self) -> int:
        return len(self.rows)


@dataclass
class BuildResult:
    """Everything a run learned from the sections."""

    snapshot: Snapshot
    sections: list[SectionResult]
    sightings: dict[str, set[PRKey]]
    mentioned: set[PRKey] | None
    participated: set[PRKey]
    degraded: bool


def sort_entries(
    entries: list[PullRequest], priority_repos: list[str], sort_by: str, direction: str
) -> list[PullRequest]:
    """Order entries by repo (priority repos first, then by name), then by
    number or activity within each repo."""
    by_repo: dict[str, list[PullRequest]] = {}
    for entry in entries:
        by_repo.setdefault(entry.repo, []).append(entry)

    priority = {repo: index for index, repo in enumerate(priority_repos)}
    repos = sorted(by_repo, key=lambda r: (priority.get(r, len(priority)), r))

    ordered = []
    for repo in repos:
        if sort_by == "activity":
            group = sorted(by_repo[repo], key=lambda e: (e.updated_at, e.number))
        else:
            group = sorted(by_repo[repo], key=lambda e: e.number)
        if direction == "desc":
            group.reverse()
        ordered.extend(group)
    return ordered


def unique_entries(entries: list[PullRequest]) -> list[PullRequest]:
    seen = set()
    unique = []
    for entry in entries:
        if entry.key not in seen:
            seen.add(entry.key)
            unique.append(entry)
    return unique


def record_from_entry(
    entry: PullRequest, enrichment: Enrichment, prior: PullRequestRecord | None = None
) -> PullRequestRecord:
    """Build the snapshot row of a fetched entry.

    When enrichment couldn't be fetched, the comment and review fields of
    ``prior`` (the row from the last run) are kept so that a failed lookup
    never reads as a change on the next run.
    """
    conversation = enrichment.conversation_count if enrichment.fetched else entry.comment_count
    record = PullRequestRecord(
        repo=entry.repo,
        number=entry.number,
        title=sanitize_field(entry.title),
        url=entry.url,
        updated_at=entry.updated_at,
        created_at=entry.created_at,
        conversation_count=conversation,
        in_merge_queue=entry.is_in_merge_queue,
        latest_comment=enrichment.latest_comment,
        review_decision=entry.review_decision,
        author=entry.author,
        viewer_review_state=enrichment.my_review_state,
        viewer_review_at=enrichment.my_review_at,
        viewer_had_approved=enrichment.my_had_approved,
    )
    if enrichment.fetched or prior is None:
        return record
    return replace(
        record,
        latest_comment=prior.latest_comment,
        viewer_review_state=prior.viewer_review_state,
        viewer_review_at=prior.viewer_review_at,
        viewer_had_approved=prior.viewer_had_approved,
    )


class SnapshotBuilder:
    """Runs sections in order and merges their rows into one snapshot."""

    def __init__(
        self,
        config: Config,
        enrichment: EnrichmentCache,
        unread: set[PRKey] | None = None,
        involved: set[PRKey] | None = None,
        rerequest_hits: set[PRKey] | None = None,
        previous_queue: set[PRKey] | None = None,
        previous: Snapshot | None = None,
    ) -> None:
        self._config = config
        self._enrichment = enrichment
        self._unread = unread or set()
        self._involved = involved or set()
        self._rerequest_hits = rerequest_hits or set()
        self._previous_queue = previous_queue or set()
        self._previous = previous or {}

    def _enrich_one(self, entry: PullRequest) -> Enrichment:
        try:
            return self._enrichment.enrich(entry.repo, entry.number, entry.updated_at)
        except Exception:
            logger.exception("Enrichment crashed for %s#%s", entry.repo, entry.number)
            return EMPTY_ENRICHMENT

    def _decorate(self, section: Section, entry: PullRequest, enrichment: Enrichment) -> frozenset[str]:
        marks = set()
        if entry.is_draft:
            marks.add("draft")
        elif entry.is_in_merge_queue:
            marks.add("queue")
        elif entry.key in self._previous_queue:
            marks.add("queue_left")
        if entry.key not in self._involved and not entry.viewer_has_reacted:
            marks.add("not_participated")
        if section.check_my_review:
            if enrichment.my_review_state == "APPROVED":
                marks.add("approved_by_me")
            elif enrichment.my_review_state == "DISMISSED":
                marks.add("approval_dismissed")
        if entry.review_decision == "CHANGES_REQUESTED":
            marks.add("changes_requested")
        if entry.key in self._unread:
            marks.add("unread")
        if entry.key in self._rerequest_hits:
            marks.add("rerequested")
        return frozenset(marks)

    def build(self, sections: list[Section]) -> BuildResult:
        """Fetch every section and collate the results.

        A PR shown by an earlier section is not shown again, but later
        sightings still count for flags and side tables.
        """
        seen: set[PRKey] = set()
        records: Snapshot = {}
        flags: dict[PRKey, set[str]] = {}
        sightings: dict[str, set[PRKey]] = {"reacted": set()}
        mentioned: set[PRKey] | None = None
        results = []
        degraded = False

        for section in sections:
            try:
                fetched = section.fetch()
            except Exception:
                logger.exception("Section %s crashed", section.title)
                fetched = SearchResult(complete=False)

            if not fetched.complete:
                degraded = True
                logger.warning("Section %s is incomplete", section.title)

            entries = unique_entries(fetched.entries)
            if section.capture == CAPTURE_MENTIONED and fetched.complete:
                mentioned = (mentioned or set()) | {e.key for e in entries}
            if section.capture:
                sightings.setdefault(section.capture, set()).update(e.key for e in entries)

            totals: dict[str, int] = {}
            fresh = []
            for entry in entries:
                totals[entry.repo] = totals.get(entry.repo, 0) + 1
                if entry.viewer_has_reacted:
                    sightings["reacted"].add(entry.key)
                entry_flags = set(section.flags_for(entry)) if section.flags_for else set()
                if section.flag:
                    entry_flags.add(section.flag)
                for flag in entry_flags:
                    flags.setdefault(entry.key, set()).add(flag)
                    sightings.setdefault(flag, set()).add(entry.key)
                if entry.key not in seen:
                    seen.add(entry.key)
                    fresh.append(entry)

            fresh = sort_entries(
                fresh,
                self._config.priority_repos,
                self._config.sort_by,
                self._config.sort_direction,
            )

            # map() keeps input order, so rows come back in sort order
            with ThreadPoolExecutor(max_workers=self._config.concurrency) as pool:
                enrichments = list(pool.map(self._enrich_one, fresh))

            result = SectionResult(section=section, totals=totals, complete=fetched.complete)
            for entry, enrichment in zip(fresh, enrichments):
                record = record_from_entry(entry, enrichment, self._previous.get(entry.key))
                if section.tracked:
                    records[entry.key] = record
                result.rows.append(
                    SectionRow(
                        record=record,
                        entry=entry,
                        enrichment=enrichment,
                        decorations=self._decorate(section, entry, enrichment),
                    )
                )
            results.append(result)

        snapshot = {
            key: replace(record, flags=frozenset(flags.get(key, ())))
            for key, record in records.items()
        }
        return BuildResult(
            snapshot=snapshot,
            sections=results,
            sightings=sightings,
            mentioned=mentioned,
            participated=self._involved | sightings["reacted"],
            degraded=degraded,
        )


def repo_qualifier(repos: list[str]) -> str:
    """Build `` repo:a repo:b`` search qualifiers for the allowlist."""
    return "".join(f" repo:{repo}" for repo in repos)


def load_team_members(
    client: GitHubClient, team: str, cache_dir: Path, ttl: int, now: float | None = None
) -> list[str]:
    """Return team member logins, cached on disk for ``ttl`` seconds.

    When the API call fails, a stale cached list is better than nothing.
    """
    org, _, slug = team.partition("/")
    path = cache_dir / f"{org}_{slug}.txt"
    now = time.time() if now is None else now

    cached = None
    if path.exists():
        try:
            cached = [line.strip() for line in path.read_text().splitlines() if line.strip()]
            if cached and now - path.stat().st_mtime < ttl:
                return cached
        except OSError:
            cached = None

    members = client.team_members(team)
    if members is None:
        return cached or []

    try:
        atomic_write_text(path, "".join(f"{login}\n" for login in members))
    except OSError as e:
        logger.warning("Cannot cache members of %s: %s", team, e)
    return members


def _merge_results(results: list[SearchResult]) -> SearchResult:
    merged = SearchResult()
    for result in results:
        merged.entries.extend(result.entries)
        merged.complete = merged.complete and result.complete
    merged.entries = unique_entries(merged.entries)
    return merged


def build_sections(config: Config, client: GitHubClient, team_members_dir: Path) -> list[Section]:
    """Declare the menu sections in display order."""
    repo_q = repo_qualifier(config.watched_repos)
    author_excl = " -author:@me" if config.section_enabled("raised_by_me") else ""
    sections = []

    def searcher(query: str, paginate: bool = False) -> Callable[[], SearchResult]:
        if paginate:
            return lambda: client.search(query + repo_q)
        return lambda: client.search_once(query + repo_q)

    if config.section_enabled("raised_by_me"):
        sections.append(
            Section("Raised by Me", "is:pr is:open author:@me", searcher("is:pr is:open author:@me"))
        )

    if config.section_enabled("mentioned"):
        query = f"is:pr is:open mentions:@me{author_excl}"
        sections.append(Section("Mentioned", query, searcher(query), capture=CAPTURE_MENTIONED))

    if config.section_enabled("participated"):
        commenter_q = f"is:pr is:open commenter:@me{author_excl}{repo_q}"
        reacted_q = f"is:pr is:open reactions:>=1{author_excl}{repo_q}"

        def fetch_participated() -> SearchResult:
            commented = client.search_once(commenter_q)
            reacted = client.search_once(reacted_q)
            # reactions:>=1 matches anyone's reactions; keep only the viewer's
            reacted.entries = [e for e in reacted.entries if e.viewer_has_reacted]
            return _merge_results([commented, reacted])

        sections.append(
            Section(
                "Participated",
                f"is:pr is:open commenter:@me{author_excl}",
                fetch_participated,
                check_my_review=True,
            )
        )

    if config.section_enabled("requested_to_me"):
        requested_q = f"is:pr is:open user-review-requested:@me{repo_q}"
        assigned_q = f"is:pr is:open assignee:@me{repo_q}"
        origin: dict[PRKey, set[str]] = {}

        def fetch_requested_to_me() -> SearchResult:
            origin.clear()
            requested = client.search_once(requested_q)
            assigned = client.search_once(assigned_q)
            for flag, result in ((FLAG_REQUESTED_ME, requested), (FLAG_ASSIGNED_ME, assigned)):
                for entry in result.entries:
                    origin.setdefault(entry.key, set()).add(flag)
            return _merge_results([requested, assigned])

        sections.append(
            Section(
                "Requested to Me",
                "is:pr is:open user-review-requested:@me",
                fetch_requested_to_me,
                flags_for=lambda entry: origin.get(entry.key, set()),
            )
        )

    if config.section_enabled("recently_merged") and config.recently_merged_days > 0:
        since = time.strftime(
            "%Y-%m-%d", time.gmtime(time.time() - config.recently_merged_days * 86400)
        )
        query = f"is:pr is:merged author:@me merged:>={since}"
        sections.append(
            Section("Recently Merged", "is:pr is:merged author:@me", searcher(query), tracked=False)
        )

    for team in config.requested_to_teams:
        query = f"is:pr is:open team-review-requested:{team}"
        sections.append(
            Section(
                team.partition("/")[2],
                query,
                searcher(query),
                group="Requested to",
                flag=FLAG_REQUESTED_TEAM,
            )
        )

    for team in config.raised_by_teams:

        def fetch_raised_by(team: str = team) -> SearchResult:
            members = load_team_members(
                client, team, team_members_dir, config.team_members_cache_ttl
            )
            if not members:
                return SearchResult(complete=False)
            queries = [f"is:pr is:open author:{login}{repo_q}" for login in members]
            with ThreadPoolExecutor(max_workers=config.raised_by_concurrency) as pool:
                results = list(pool.map(lambda q: client.search(q, paginate=False), queries))
            return _merge_results(results)

        sections.append(
            Section(
                team.partition("/")[2],
                "is:pr is:open",
                fetch_raised_by,
                group="Raised by",
                header_link_kind="search",
            )
        )

    def fetch_all() -> SearchResult:
        result = client.search(f"is:pr is:open{repo_q}")
        if result.entries or not config.watched_repos:
            return result
        logger.warning("Open PR search returned nothing, listing repositories over REST")
        return client.list_open_pulls(config.watched_repos)

    sections.append(Section("All", "is:pr is:open", fetch_all, group="All"))
    return sections
