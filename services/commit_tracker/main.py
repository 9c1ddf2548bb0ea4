"""
Post-commit pipeline for TDD cycle metrics.

Runs once per commit:
START -> EXTRACT -> CLASSIFY -> CYCLE_UPDATE -> LOG -> DISPATCH_REMOTE -> DONE

Every stage after EXTRACT is best-effort: a failure becomes a warning and
the pipeline moves on. A failed EXTRACT ends the run. The hook always exits
with status 0 so the commit is never reported as failed.
"""

import logging
import sys
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field
from rich.console import Console
from rich.markup import escape

from config.settings import Settings, get_settings
from shared.models import CommitEvent, CycleObservation, LogRecord, Phase, format_duration
from shared.state_store import CycleStateStore
from services.commit_tracker.classifier import classify
from services.commit_tracker.extractor import CommitEventExtractor
from services.commit_tracker.local_logger import LocalDurableLogger
from services.commit_tracker.publisher import RemotePublisher

logger = logging.getLogger(__name__)


class PipelineStage(Enum):
    """Pipeline states, in order."""
    START = "start"
    EXTRACT = "extract"
    CLASSIFY = "classify"
    CYCLE_UPDATE = "cycle_update"
    LOG = "log"
    DISPATCH_REMOTE = "dispatch_remote"
    DONE = "done"


class StageWarning(BaseModel):
    stage: PipelineStage
    message: str


class PipelineResult(BaseModel):
    """Everything one invocation produced."""

    state: PipelineStage = PipelineStage.START
    event: Optional[CommitEvent] = None
    observation: Optional[CycleObservation] = None
    record: Optional[LogRecord] = None
    logged: bool = False
    dispatched: bool = False
    warnings: List[StageWarning] = Field(default_factory=list)
    exit_code: int = 0

    @property
    def completed(self) -> bool:
        return self.state == PipelineStage.DONE


class CommitPipeline:
    """Wires extractor, classifier, cycle state, local log and remote publisher."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        extractor: Optional[CommitEventExtractor] = None,
        state_store: Optional[CycleStateStore] = None,
        local_logger: Optional[LocalDurableLogger] = None,
        publisher: Optional[RemotePublisher] = None,
        console: Optional[Console] = None,
        repo_path: Optional[str] = None,
    ):
        self.settings = settings or get_settings()
        self.extractor = extractor or CommitEventExtractor(repo_path)
        self.state_store = state_store or CycleStateStore.from_settings(self.settings)
        self.local_logger = local_logger or LocalDurableLogger.from_settings(self.settings)
        self.publisher = publisher or RemotePublisher(self.settings)
        self.console = console or Console(stderr=True)

    def _warn(self, result: PipelineResult, stage: PipelineStage, message: str) -> None:
        result.warnings.append(StageWarning(stage=stage, message=message))
        logger.info(f"{stage.value}: {message}")
        if self.settings.hook.show_warnings:
            self.console.print(f"[yellow]⚠️  tdd-metrics ({stage.value}): {escape(message)}[/yellow]")

    def run(self, commit_ref: str = "HEAD") -> PipelineResult:
        result = PipelineResult()

        result.state = PipelineStage.EXTRACT
        try:
            event = self.extractor.extract(commit_ref)
        except Exception as e:
            self._warn(result, PipelineStage.EXTRACT, f"could not read commit: {e}")
            result.state = PipelineStage.DONE
            return result

        result.state = PipelineStage.CLASSIFY
        try:
            event = event.with_phase(classify(event.message, event.changed_paths))
        except Exception as e:
            self._warn(result, PipelineStage.CLASSIFY, f"classification failed: {e}")
            event = event.with_phase(Phase.OTHER)
        result.event = event

        result.state = PipelineStage.CYCLE_UPDATE
        try:
            observation = self.state_store.record(
                event.branch, event.phase, event.occurred_at, event.commit_hash
            )
        except Exception as e:
            self._warn(result, PipelineStage.CYCLE_UPDATE, f"cycle state unavailable: {e}")
            observation = CycleObservation.skipped_observation()
        if observation.skipped:
            logger.info(f"Cycle duration not computed for {event.commit_hash}")
        if observation.duration is not None:
            event = event.with_cycle_duration(observation.duration)
        result.event = event
        result.observation = observation

        result.state = PipelineStage.LOG
        try:
            record = LogRecord.from_event(event, observation)
            result.record = record
            self.local_logger.append(record)
            result.logged = True
        except Exception as e:
            self._warn(result, PipelineStage.LOG, f"metric for this commit lost: {e}")

        result.state = PipelineStage.DISPATCH_REMOTE
        if result.record is not None:
            try:
                result.dispatched = self.publisher.publish_async(result.record)
            except Exception as e:
                logger.info(f"Remote dispatch failed: {e}")

        if event.cycle_duration is not None and self.settings.hook.announce_cycles:
            self.console.print(
                f"[green]✅ TDD cycle closed on {escape(event.branch)} in "
                f"{format_duration(event.cycle_duration)}[/green]"
            )

        result.state = PipelineStage.DONE
        logger.info(f"Processed {event.phase.value} commit {event.commit_hash}")
        return result


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.monitoring.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )


def run_hook(commit_ref: str = "HEAD", repo_path: Optional[str] = None) -> int:
    """Run the pipeline for one commit; always returns 0."""
    try:
        settings = get_settings()
        configure_logging(settings)
        CommitPipeline(settings, repo_path=repo_path).run(commit_ref)
    except Exception as e:
        print(f"tdd-metrics: skipped ({e})", file=sys.stderr)
    return 0


def main() -> int:
    """Entry point for the post-commit hook (takes no arguments)."""
    return run_hook()


if __name__ == "__main__":
    sys.exit(main())
