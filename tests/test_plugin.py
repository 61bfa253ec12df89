"""Tests for plugin module."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from prbar.cache import get_state_paths, load_key_set, save_key_set
from prbar.config import Config
from prbar.github_client import Comment, PullData, PullDetail, SearchResult
from prbar.plugin import (
    RunContext,
    acknowledge,
    authored_by,
    collect_rerequests,
    main,
    run_once,
)
from prbar.snapshot import FLAG_REQUESTED_TEAM, load_snapshot


@pytest.fixture
def only_all_config(sample_config: Config) -> Config:
    """Config showing just the All section."""
    sample_config.sections = dict.fromkeys(sample_config.sections, False)
    sample_config.requested_to_teams = []
    return sample_config


@pytest.fixture
def context(only_all_config: Config, mock_github_client, tmp_path: Path) -> RunContext:
    return RunContext(
        config=only_all_config,
        client=mock_github_client,
        viewer="me",
        paths=get_state_paths(tmp_path / "state"),
        sink=MagicMock(),
    )


def serve(client, *entries, complete: bool = True) -> None:
    client.search.return_value = SearchResult(entries=list(entries), complete=complete)


class TestRunOnce:
    """Tests for run_once."""

    def test_first_run_primes_without_notifying(self, context: RunContext, make_pr) -> None:
        """Should write state and send nothing on the first run."""
        serve(context.client, make_pr(number=1), make_pr(number=2))

        result = run_once(context)

        assert result.primed
        context.sink.assert_not_called()
        assert context.paths.snapshot.read_text()
        assert set(load_snapshot(context.paths.snapshot)) == {("acme/app", 1), ("acme/app", 2)}
        assert result.lines[0].text == "🔀 2"

    def test_new_pr_notifies_once(self, context: RunContext, make_pr) -> None:
        """Should notify a new PR and stay quiet on an identical rerun."""
        serve(context.client, make_pr(number=1))
        run_once(context)

        serve(context.client, make_pr(number=1), make_pr(number=2))
        second = run_once(context)
        ledger_after_second = context.paths.ledger.read_text()
        third = run_once(context)

        assert [e.number for e in second.sent] == [2]
        context.sink.assert_called_once()
        assert context.sink.call_args[0][1] == "New PR by alice"
        assert third.sent == []
        assert context.paths.ledger.read_text() == ledger_after_second

    def test_merge_is_verified(self, context: RunContext, make_pr) -> None:
        """Should notify a vanished PR only once GitHub confirms the merge."""
        serve(context.client, make_pr(number=1), make_pr(number=2))
        run_once(context)
        context.client.get_pull_detail.return_value = PullDetail(
            repo="acme/app",
            number=2,
            title="PR 2",
            url="https://github.com/acme/app/pull/2",
            state="closed",
            merged=True,
            merged_at="2024-01-05T00:00:00Z",
            created_at="2024-01-01T00:00:00Z",
        )

        serve(context.client, make_pr(number=1))
        result = run_once(context)

        context.client.get_pull_detail.assert_called_once_with("acme/app", 2)
        assert context.sink.call_args[0][1] == "PR Merged"
        assert [e.number for e in result.sent] == [2]

    def test_closed_unmerged_is_silent(self, context: RunContext, make_pr) -> None:
        """Should not report a PR that was closed without merging."""
        serve(context.client, make_pr(number=1), make_pr(number=2))
        run_once(context)

        serve(context.client, make_pr(number=1))
        result = run_once(context)

        assert result.sent == []
        context.sink.assert_not_called()

    def test_failed_fetch_keeps_previous_state(self, context: RunContext, make_pr) -> None:
        """Should not overwrite state when nothing could be fetched."""
        serve(context.client, make_pr(number=1))
        run_once(context)
        before = context.paths.snapshot.read_text()

        serve(context.client, complete=False)
        context.client.list_open_pulls.return_value = SearchResult(complete=False)
        result = run_once(context)

        assert result.skipped
        assert context.paths.snapshot.read_text() == before
        context.client.get_pull_detail.assert_not_called()
        context.sink.assert_not_called()

    def test_partial_fetch_keeps_unseen_prs(self, context: RunContext, make_pr) -> None:
        """Should not treat PRs on a failed page as gone, nor as new when they return."""
        serve(context.client, make_pr(number=1), make_pr(number=2))
        run_once(context)

        serve(context.client, make_pr(number=1), complete=False)
        partial = run_once(context)
        kept = set(load_snapshot(context.paths.snapshot))
        serve(context.client, make_pr(number=1), make_pr(number=2))
        full = run_once(context)

        assert not partial.skipped
        assert kept == {("acme/app", 1), ("acme/app", 2)}
        assert partial.events == []
        assert full.events == []
        context.client.get_pull_detail.assert_not_called()
        context.sink.assert_not_called()

    def test_failed_enrichment_is_not_a_new_comment(self, context: RunContext, make_pr) -> None:
        """Should not report an old comment after one failed enrichment."""
        old = PullData(
            issue_comment_count=1,
            thread_comment_count=0,
            reviews=[],
            latest_comment=Comment(id="IC_old", author="bob", body="ship it"),
        )
        context.client.fetch_pull_data.return_value = old
        serve(context.client, make_pr(number=1))
        run_once(context)

        context.client.fetch_pull_data.return_value = None
        serve(context.client, make_pr(number=1, updated_at="2024-01-02T00:00:00Z"))
        failed = run_once(context)
        context.client.fetch_pull_data.return_value = old
        recovered = run_once(context)

        assert load_snapshot(context.paths.snapshot)[("acme/app", 1)].latest_comment.id == "IC_old"
        assert failed.sent == []
        assert recovered.sent == []
        context.sink.assert_not_called()

    def test_queue_state_is_persisted(self, context: RunContext, make_pr) -> None:
        """Should record which PRs sit in the merge queue."""
        serve(context.client, make_pr(number=1, is_in_merge_queue=True), make_pr(number=2))

        run_once(context)

        assert load_key_set(context.paths.queue) == {("acme/app", 1)}


class TestHelpers:
    """Tests for run helpers."""

    def test_authored_by(self, make_record) -> None:
        """Should match the viewer case-insensitively."""
        mine = make_record(number=1, author="Me")
        theirs = make_record(number=2, author="bob")

        assert authored_by("me", {mine.key: mine, theirs.key: theirs}) == {("acme/app", 1)}
        assert authored_by("", {mine.key: mine}) == set()

    def test_failed_rerequest_lookup_keeps_stored_time(
        self, context: RunContext, make_record
    ) -> None:
        """Should keep the stored request time of a PR whose lookup failed."""
        failing = make_record(number=1, flags=frozenset({FLAG_REQUESTED_TEAM}))
        working = make_record(number=2, flags=frozenset({FLAG_REQUESTED_TEAM}))
        context.client.latest_review_request_at.side_effect = (
            lambda repo, number, teams, user: None if number == 1 else "2024-01-03T00:00:00Z"
        )

        stamps = collect_rerequests(
            context,
            {failing.key: failing, working.key: working},
            {failing.key: "2024-01-01T00:00:00Z", ("acme/app", 9): "2024-01-01T00:00:00Z"},
        )

        assert stamps == {
            ("acme/app", 1): "2024-01-01T00:00:00Z",
            ("acme/app", 2): "2024-01-03T00:00:00Z",
        }


class TestAcknowledge:
    """Tests for acknowledge."""

    @patch("prbar.plugin.webbrowser")
    def test_clears_mark_and_opens(self, mock_browser: MagicMock, tmp_path: Path) -> None:
        """Should drop the PR from the re-requested set and open it."""
        paths = get_state_paths(tmp_path)
        save_key_set(paths.rerequest_hits, {("acme/app", 4), ("acme/app", 5)})

        assert acknowledge(paths, "acme/app#4") == 0

        assert load_key_set(paths.rerequest_hits) == {("acme/app", 5)}
        mock_browser.open.assert_called_once_with("https://github.com/acme/app/pull/4")

    @patch("prbar.plugin.webbrowser")
    def test_bad_key(self, mock_browser: MagicMock, tmp_path: Path) -> None:
        """Should refuse malformed keys."""
        assert acknowledge(get_state_paths(tmp_path), "acme/app") == 2
        mock_browser.open.assert_not_called()


class TestMain:
    """Tests for the command line entry point."""

    def test_config_error_prints_error_menu(self, tmp_path: Path, capsys) -> None:
        """Should render the error in the menu instead of crashing."""
        exit_code = main(["--config", str(tmp_path / "missing.yaml")])

        out = capsys.readouterr().out.splitlines()
        assert exit_code == 0
        assert out[0] == "🔀 ❌"
        assert out[2].startswith("Configuration Error: Config file not found")

    def test_no_watched_repos(self, tmp_path: Path, capsys) -> None:
        """Should show an empty menu without calling GitHub."""
        config_path = tmp_path / "config.yaml"
        config_path.write_text(f"github_token: ghp_test\ncache_dir: {tmp_path / 'cache'}\n")

        with patch("prbar.plugin.create_context") as mock_create:
            exit_code = main(["--config", str(config_path)])

        assert exit_code == 0
        assert capsys.readouterr().out == "🔀 0\n---\n"
        mock_create.assert_not_called()

    def test_prints_menu(self, tmp_path: Path, capsys, context: RunContext, make_pr) -> None:
        """Should print the rendered menu."""
        config_path = tmp_path / "config.yaml"
        config_path.write_text(
            "github_token: ghp_test\n"
            "watched_repos: [acme/app]\n"
            f"cache_dir: {tmp_path / 'cache'}\n"
        )
        serve(context.client, make_pr(number=1))

        with patch("prbar.plugin.create_context", return_value=context):
            exit_code = main(["--config", str(config_path)])

        out = capsys.readouterr().out.splitlines()
        assert exit_code == 0
        assert out[0] == "🔀 1"
        assert any(line.startswith("-- 🔅 PR 1 | href=") for line in out)
