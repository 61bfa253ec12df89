"""One plugin run: fetch, render, detect, notify, persist."""

import argparse
import logging
import shutil
import sys
import webbrowser
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from github import Auth, Github

from prbar.avatars import AvatarCache
from prbar.cache import (
    PRKey,
    StatePaths,
    get_state_paths,
    load_key_set,
    load_timestamp_map,
    parse_pr_key,
    save_key_set,
    save_timestamp_map,
)
from prbar.config import Config, ConfigError, get_config_path, load_config
from prbar.enrichment import EnrichmentCache
from prbar.events import DetectionInput, Event, EventKind, detect_events
from prbar.github_client import GitHubClient
from prbar.ledger import NotificationLedger
from prbar.log import setup_logging
from prbar.notifications import Sink, dispatch, notify
from prbar.render import (
    AvatarLookup,
    MenuLine,
    MenuRenderer,
    empty_menu,
    error_menu,
    format_menu,
)
from prbar.snapshot import (
    FLAG_REQUESTED_ME,
    FLAG_REQUESTED_TEAM,
    BuildResult,
    Snapshot,
    SnapshotBuilder,
    build_sections,
    load_snapshot,
    save_snapshot,
)

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """Everything a run needs, passed explicitly from stage to stage."""

    config: Config
    client: GitHubClient
    viewer: str
    paths: StatePaths
    sink: Sink = notify
    avatars: AvatarLookup | None = None
    ack_command: str | None = None


@dataclass
class RunResult:
    """Outcome of one run."""

    lines: list[MenuLine]
    events: list[Event] = field(default_factory=list)
    sent: list[Event] = field(default_factory=list)
    primed: bool = False
    skipped: bool = False


def create_context(config: Config) -> RunContext:
    """Wire the GitHub client, avatar cache and state layout for ``config``."""
    github = Github(auth=Auth.Token(config.github_token), timeout=config.request_timeout, per_page=100)
    client = GitHubClient(github, config)
    paths = get_state_paths(config.cache_dir)
    avatars = AvatarCache(paths.avatars_dir, timeout=config.request_timeout)
    return RunContext(
        config=config,
        client=client,
        viewer=client.username,
        paths=paths,
        avatars=avatars.get_b64,
        ack_command=shutil.which("prbar"),
    )


def collect_rerequests(
    ctx: RunContext, snapshot: Snapshot, previous: dict[PRKey, str] | None = None
) -> dict[PRKey, str]:
    """Fetch the newest review-request time for PRs requested to my teams or me.

    A PR whose lookup failed keeps its time from ``previous``.
    """
    previous = previous or {}
    candidates = sorted(
        key
        for key, record in snapshot.items()
        if record.has_flag(FLAG_REQUESTED_TEAM) or record.has_flag(FLAG_REQUESTED_ME)
    )
    if not candidates:
        return {}

    def lookup(key: PRKey) -> str | None:
        repo, number = key
        user = ctx.viewer if snapshot[key].has_flag(FLAG_REQUESTED_ME) else None
        return ctx.client.latest_review_request_at(
            repo, number, ctx.config.requested_to_teams, user
        )

    with ThreadPoolExecutor(max_workers=ctx.config.concurrency) as pool:
        stamps = list(pool.map(lookup, candidates))
    stamps_by_key = {}
    for key, stamp in zip(candidates, stamps):
        if stamp:
            stamps_by_key[key] = stamp
        elif key in previous:
            stamps_by_key[key] = previous[key]
    return stamps_by_key


def authored_by(viewer: str, *snapshots: Snapshot) -> set[PRKey]:
    if not viewer:
        return set()
    return {
        key
        for snapshot in snapshots
        for key, record in snapshot.items()
        if record.author.lower() == viewer.lower()
    }


def persist_side_state(
    ctx: RunContext,
    build: BuildResult,
    current: Snapshot,
    rerequest: dict[PRKey, str] | None,
    hits: set[PRKey],
) -> None:
    paths = ctx.paths
    if build.mentioned is not None:
        save_key_set(paths.mentioned, build.mentioned)
    save_key_set(paths.queue, {key for key, record in current.items() if record.in_merge_queue})
    if rerequest is not None:
        save_timestamp_map(paths.rerequest, rerequest)
    save_key_set(paths.rerequest_hits, hits & set(current))


def run_once(ctx: RunContext) -> RunResult:
    """Run the plugin once.

    The new snapshot is written last, after notifications went out and the
    ledger was saved, so an interrupted run is redone from the same
    previous state.

    Args:
        ctx: Run context.

    Returns:
        Menu lines plus what was detected and sent.
    """
    config, client, paths = ctx.config, ctx.client, ctx.paths

    previous = load_snapshot(paths.snapshot)
    previous_mentioned = load_key_set(paths.mentioned)
    previous_queue = load_key_set(paths.queue)
    previous_rerequest = load_timestamp_map(paths.rerequest) or {}
    hits = load_key_set(paths.rerequest_hits) or set()
    if previous_queue is None and previous is not None:
        previous_queue = {key for key, record in previous.items() if record.in_merge_queue}

    builder = SnapshotBuilder(
        config,
        EnrichmentCache(client, paths.pr_data_dir, ctx.viewer),
        unread=client.unread_pull_requests(),
        involved=client.involved_pull_requests(),
        rerequest_hits=hits,
        previous_queue=previous_queue,
        previous=previous,
    )
    build = builder.build(build_sections(config, client, paths.team_members_dir))
    renderer = MenuRenderer(config, avatars=ctx.avatars, ack_command=ctx.ack_command)
    lines = renderer.render(build)

    current = build.snapshot
    if build.degraded and not current:
        logger.error("Nothing could be fetched; keeping previous state")
        return RunResult(lines=lines, skipped=True)
    if build.degraded and previous:
        # An unseen PR may just sit on a page that failed to load
        unseen = {key: record for key, record in previous.items() if key not in current}
        if unseen:
            logger.warning("Incomplete fetch; keeping %d unseen PRs from last run", len(unseen))
            current = {**unseen, **current}

    rerequest = None
    if config.notification_enabled("rerequested"):
        rerequest = collect_rerequests(ctx, current, previous_rerequest)

    ledger = NotificationLedger.load(paths.ledger)
    result = RunResult(lines=lines)

    if previous is None:
        logger.info("No previous state; priming %d PRs without notifications", len(current))
        result.primed = True
        previous = {}
    else:
        inp = DetectionInput(
            previous=previous,
            current=current,
            previous_mentioned=previous_mentioned,
            current_mentioned=build.mentioned,
            previous_queue=previous_queue,
            previous_rerequest=previous_rerequest,
            current_rerequest=rerequest or {},
            viewer=ctx.viewer,
        )
        result.events = detect_events(inp, lambda key: client.get_pull_detail(*key))
        result.sent = dispatch(
            result.events,
            ledger,
            config,
            raised_by_me=authored_by(ctx.viewer, current, previous),
            participated=build.participated,
            sink=ctx.sink,
        )
        hits |= {event.pr for event in result.sent if event.kind == EventKind.REREQUESTED}

    ledger.gc(set(current) | set(previous))
    ledger.save(paths.ledger)
    persist_side_state(ctx, build, current, rerequest, hits)
    save_snapshot(paths.snapshot, current)
    return result


def acknowledge(paths: StatePaths, text: str) -> int:
    """Clear the re-requested mark of a PR and open it."""
    key = parse_pr_key(text)
    if key is None:
        logger.error("Not a pull request key: %s", text)
        return 2

    hits = load_key_set(paths.rerequest_hits) or set()
    if key in hits:
        hits.discard(key)
        save_key_set(paths.rerequest_hits, hits)
    repo, number = key
    webbrowser.open(f"https://github.com/{repo}/pull/{number}")
    return 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="prbar", description="GitHub pull requests for the macOS menu bar"
    )
    parser.add_argument("--config", type=Path, help="Path to config.yaml")
    parser.add_argument(
        "--ack", metavar="OWNER/REPO#N", help="Clear the re-requested mark of a PR and open it"
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Entry point for the ``prbar`` command."""
    args = parse_args(argv)
    try:
        config = load_config(args.config or get_config_path())
    except ConfigError as e:
        sys.stdout.write(format_menu(error_menu(f"Configuration Error: {e}")))
        return 0

    setup_logging(config.log_level, config.cache_dir)
    paths = get_state_paths(config.cache_dir)

    if args.ack:
        return acknowledge(paths, args.ack)

    if not config.watched_repos:
        sys.stdout.write(format_menu(empty_menu()))
        return 0

    result = run_once(create_context(config))
    sys.stdout.write(format_menu(result.lines))
    return 0


if __name__ == "__main__":
    sys.exit(main())
