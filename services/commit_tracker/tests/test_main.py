"""
Unit tests for the post-commit pipeline.

Exercises the stage sequence with a fake extractor, injects a failure into
every stage, and runs the whole hook once against a real Git repository.
"""

import fcntl
import io
import json
import pytest
from datetime import datetime, timezone, timedelta
from pathlib import Path
from unittest.mock import Mock, patch

from git import Repo, Actor
from rich.console import Console

from config.settings import Settings, StorageSettings, LangfuseSettings, HookSettings
from shared.models import CommitEvent, Phase
from shared.state_store import CycleStateStore
from services.commit_tracker.extractor import ExtractionError
from services.commit_tracker.local_logger import LocalDurableLogger, LocalLogError
from services.commit_tracker.main import CommitPipeline, PipelineStage, run_hook
from services.commit_tracker.publisher import RemotePublisher

T0 = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)


def make_event(commit_hash, message, minutes=0, branch="main", paths=None):
    return CommitEvent(
        commit_hash=commit_hash,
        branch=branch,
        message=message,
        files_changed=len(paths or []),
        lines_added=10,
        lines_removed=2,
        changed_paths=paths or [],
        author="Test User",
        repository="marketplace",
        occurred_at=T0 + timedelta(minutes=minutes),
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        storage=StorageSettings(
            log_file=str(tmp_path / "logs" / "tdd-cycle.jsonl"),
            state_file=str(tmp_path / "state" / "tdd-cycle-state.json"),
            circuit_file=str(tmp_path / "state" / "circuit.json"),
            diagnostics_file=str(tmp_path / "logs" / "publish.log"),
            fsync=False,
        ),
        langfuse=LangfuseSettings(host=None, public_key=None, secret_key=None),
        hook=HookSettings(show_warnings=True, announce_cycles=True),
    )


@pytest.fixture
def console():
    return Console(file=io.StringIO(), width=200)


def make_pipeline(settings, console, *events, **overrides):
    extractor = Mock()
    extractor.extract.side_effect = list(events)
    return CommitPipeline(settings, extractor=extractor, console=console, **overrides)


def logged_lines(settings):
    path = Path(settings.storage.log_file)
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines()]


class TestCommitPipeline:
    """Test cases for the happy paths."""

    def test_red_then_green_closes_cycle(self, settings, console):
        """Test RED at 10:00 and GREEN at 10:06 produce a six minute cycle."""
        pipeline = make_pipeline(
            settings, console,
            make_event("red1", "test: add Email validation test"),
            make_event("green1", "feat: implement Email validation", minutes=6),
        )

        red = pipeline.run()
        green = pipeline.run()

        assert red.completed and green.completed
        assert red.event.phase == Phase.RED
        assert red.record.cycle_duration_seconds is None
        assert green.event.phase == Phase.GREEN
        assert green.event.cycle_duration == timedelta(minutes=6)
        assert green.record.cycle_duration_seconds == 360.0
        assert green.record.cycle_started_at == T0
        assert green.logged is True
        assert green.dispatched is False
        assert [line["phase"] for line in logged_lines(settings)] == ["RED", "GREEN"]
        assert "TDD cycle closed on main in 6m 0s" in console.file.getvalue()

    def test_refactor_leaves_cycle_open(self, settings, console):
        pipeline = make_pipeline(
            settings, console,
            make_event("red1", "test: add failing test"),
            make_event("ref1", "refactor: extract helper", minutes=2),
            make_event("green1", "impl: pass", minutes=5),
        )

        pipeline.run()
        refactor = pipeline.run()
        green = pipeline.run()

        assert refactor.event.phase == Phase.REFACTOR
        assert refactor.record.cycle_duration_seconds is None
        assert green.record.cycle_duration_seconds == 300.0

    def test_abandoned_red_is_flagged(self, settings, console):
        pipeline = make_pipeline(
            settings, console,
            make_event("red1", "test: first attempt"),
            make_event("red2", "test: second attempt", minutes=10),
            make_event("green1", "feat: pass", minutes=13),
        )

        pipeline.run()
        second_red = pipeline.run()
        green = pipeline.run()

        assert second_red.record.abandoned_cycle is True
        assert green.record.cycle_duration_seconds == 180.0

    def test_orphan_green(self, settings, console):
        pipeline = make_pipeline(settings, console, make_event("green1", "feat: no test first"))

        result = pipeline.run()

        assert result.record.orphan_green is True
        assert result.record.cycle_duration_seconds is None
        assert "cycle closed" not in console.file.getvalue()

    def test_tidy_touching_production_is_other(self, settings, console):
        pipeline = make_pipeline(
            settings, console, make_event("t1", "tidy: rename", paths=["src/app.py"])
        )

        assert pipeline.run().event.phase == Phase.OTHER

    def test_reprocessed_commit_is_marked_duplicate(self, settings, console):
        pipeline = make_pipeline(
            settings, console,
            make_event("red1", "test: add failing test"),
            make_event("green1", "feat: pass", minutes=6),
            make_event("green1", "feat: pass", minutes=6),
        )

        pipeline.run()
        pipeline.run()
        again = pipeline.run()

        assert again.record.duplicate is True
        assert again.record.cycle_duration_seconds is None
        assert len(logged_lines(settings)) == 3

    def test_configured_publisher_receives_record(self, settings, console):
        publisher = Mock()
        publisher.publish_async.return_value = True
        pipeline = make_pipeline(settings, console, make_event("red1", "test: x"), publisher=publisher)

        result = pipeline.run()

        assert result.dispatched is True
        publisher.publish_async.assert_called_once_with(result.record)

    def test_unconfigured_publisher_spawns_nothing(self, settings, console):
        spawn = Mock()
        publisher = RemotePublisher(settings, spawn=spawn)

        result = make_pipeline(settings, console, make_event("red1", "test: x"), publisher=publisher).run()

        assert result.logged is True
        assert result.dispatched is False
        spawn.assert_not_called()


class TestPipelineFailures:
    """Every stage failure still ends in DONE."""

    def test_extract_failure_stops_without_logging(self, settings, console):
        pipeline = make_pipeline(settings, console, ExtractionError("not a repository"))

        result = pipeline.run()

        assert result.state == PipelineStage.DONE
        assert result.record is None
        assert result.warnings[0].stage == PipelineStage.EXTRACT
        assert logged_lines(settings) == []
        assert "not a repository" in console.file.getvalue()

    def test_classify_failure_falls_back_to_other(self, settings, console):
        pipeline = make_pipeline(settings, console, make_event("red1", "test: x"))

        with patch("services.commit_tracker.main.classify", side_effect=RuntimeError("boom")):
            result = pipeline.run()

        assert result.completed
        assert result.event.phase == Phase.OTHER
        assert result.warnings[0].stage == PipelineStage.CLASSIFY
        assert result.logged is True

    def test_cycle_update_failure_logs_skipped_record(self, settings, console):
        state_store = Mock()
        state_store.record.side_effect = OSError("disk on fire")
        pipeline = make_pipeline(settings, console, make_event("g1", "feat: x"), state_store=state_store)

        result = pipeline.run()

        assert result.completed
        assert result.record.cycle_state == "skipped"
        assert result.logged is True
        assert result.warnings[0].stage == PipelineStage.CYCLE_UPDATE

    def test_lock_contention_logs_skipped_record(self, settings, console):
        store = CycleStateStore.from_settings(settings)
        store.lock_timeout = 0
        pipeline = make_pipeline(settings, console, make_event("g1", "feat: x"), state_store=store)
        store.state_file.path.parent.mkdir(parents=True)

        with open(store.state_file.lock_path, "a") as holder:
            fcntl.flock(holder.fileno(), fcntl.LOCK_EX)
            try:
                result = pipeline.run()
            finally:
                fcntl.flock(holder.fileno(), fcntl.LOCK_UN)

        assert result.completed
        assert result.record.cycle_state == "skipped"
        assert result.warnings == []

    def test_log_failure_warns_and_continues(self, settings, console):
        local_logger = Mock()
        local_logger.append.side_effect = LocalLogError("read-only file system")
        publisher = Mock()
        publisher.publish_async.return_value = False
        pipeline = make_pipeline(
            settings, console, make_event("r1", "test: x"),
            local_logger=local_logger, publisher=publisher,
        )

        result = pipeline.run()

        assert result.completed
        assert result.logged is False
        assert result.warnings[0].stage == PipelineStage.LOG
        assert "metric for this commit lost" in console.file.getvalue()
        publisher.publish_async.assert_called_once()

    def test_dispatch_failure_is_silent(self, settings, console):
        publisher = Mock()
        publisher.publish_async.side_effect = RuntimeError("fork failed")
        pipeline = make_pipeline(settings, console, make_event("r1", "test: x"), publisher=publisher)

        result = pipeline.run()

        assert result.completed
        assert result.logged is True
        assert result.dispatched is False
        assert result.warnings == []

    def test_warnings_can_be_silenced(self, settings, console):
        settings.hook.show_warnings = False
        pipeline = make_pipeline(settings, console, ExtractionError("not a repository"))

        result = pipeline.run()

        assert len(result.warnings) == 1
        assert console.file.getvalue() == ""

    def test_markup_in_branch_names_is_printed_literally(self, settings, console):
        pipeline = make_pipeline(
            settings, console,
            make_event("r1", "test: x", branch="[bold]feature"),
            make_event("g1", "feat: x", minutes=1, branch="[bold]feature"),
        )

        pipeline.run()
        pipeline.run()

        assert "[bold]feature" in console.file.getvalue()


class TestRunHook:
    """Test cases for the hook entry point."""

    def test_malformed_langfuse_host_still_logs_locally(self, tmp_path, monkeypatch):
        """Test a scheme-less LANGFUSE_HOST only disables remote publishing."""
        for name in ("LANGFUSE_PUBLIC_KEY", "LANGFUSE_SECRET_KEY"):
            monkeypatch.setenv(name, "configured")
        monkeypatch.setenv("LANGFUSE_HOST", "us.cloud.langfuse.com")
        log_file = tmp_path / "logs" / "tdd-cycle.jsonl"
        monkeypatch.setenv("TDD_METRICS_STORAGE__LOG_FILE", str(log_file))
        monkeypatch.setenv("TDD_METRICS_STORAGE__STATE_FILE", str(tmp_path / "state" / "state.json"))
        monkeypatch.setenv("TDD_METRICS_STORAGE__CIRCUIT_FILE", str(tmp_path / "state" / "circuit.json"))
        monkeypatch.setenv("TDD_METRICS_STORAGE__DIAGNOSTICS_FILE", str(tmp_path / "logs" / "publish.log"))
        monkeypatch.chdir(tmp_path)

        repo = Repo.init(tmp_path / "marketplace")
        author = Actor("Test User", "test@example.com")
        (tmp_path / "marketplace" / "test_email.py").write_text("def test_email():\n    assert False\n")
        repo.index.add(["test_email.py"])
        repo.index.commit("test: add Email validation test", author=author, committer=author)

        from config.settings import get_settings

        get_settings.cache_clear()
        try:
            assert run_hook(repo_path=repo.working_tree_dir) == 0
        finally:
            get_settings.cache_clear()

        lines = [json.loads(line) for line in log_file.read_text().splitlines()]
        assert [line["phase"] for line in lines] == ["RED"]
        assert get_settings().remote_enabled is False

    def test_run_hook_returns_zero_on_crash(self, settings):
        with patch("services.commit_tracker.main.get_settings", return_value=settings), \
                patch("services.commit_tracker.main.CommitPipeline", side_effect=RuntimeError("boom")):
            assert run_hook() == 0

    def test_run_hook_outside_repository(self, settings, tmp_path):
        with patch("services.commit_tracker.main.get_settings", return_value=settings):
            assert run_hook(repo_path=str(tmp_path / "missing")) == 0

        assert logged_lines(settings) == []

    def test_end_to_end_against_real_repository(self, settings, tmp_path):
        """Test two real commits six minutes apart through the whole hook."""
        repo = Repo.init(tmp_path / "marketplace")
        author = Actor("Test User", "test@example.com")
        work = Path(repo.working_tree_dir)

        def commit(relpath, content, message, when):
            (work / relpath).parent.mkdir(parents=True, exist_ok=True)
            (work / relpath).write_text(content)
            repo.index.add([relpath])
            repo.index.commit(message, author=author, committer=author,
                              author_date=when, commit_date=when)

        with patch("services.commit_tracker.main.get_settings", return_value=settings):
            commit("tests/test_email.py", "def test_email():\n    assert False\n",
                   "test: add Email validation test", "1700000000 +0000")
            assert run_hook(repo_path=str(work)) == 0
            commit("src/email.py", "def valid(address):\n    return '@' in address\n",
                   "feat: implement Email validation", "1700000360 +0000")
            assert run_hook(repo_path=str(work)) == 0

        lines = logged_lines(settings)
        assert [line["phase"] for line in lines] == ["RED", "GREEN"]
        assert lines[1]["cycle_duration_seconds"] == 360.0
        assert lines[1]["repository"] == "marketplace"
        assert lines[0]["files_changed"] == 1
        assert lines[1]["lines_added"] == 2
        assert LocalDurableLogger.from_settings(settings).count() == 2
