"""
Best-effort remote publishing of cycle log records to Langfuse.

The post-commit hook hands a record to ``RemotePublisher.publish_async``,
which starts a detached copy of this module and returns immediately. The
child process delivers the record with bounded retries, exponential
backoff and a persisted circuit breaker, and reports the outcome only to
the diagnostics trail. Without Langfuse credentials nothing is spawned and
no network activity happens.

Usage (child process, record as one JSON line on stdin):
    python -m services.commit_tracker.publisher
"""

import asyncio
import logging
import os
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from pydantic import BaseModel, Field

from config.settings import Settings, get_settings
from shared.events import EventFactory, EventSerializer, IngestionResponse, INGESTION_PATH
from shared.models import LogRecord
from shared.state_store import StateFile, CycleStateError

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[2]
CIRCUIT_LOCK_TIMEOUT = 0.5


class PublishError(Exception):
    """A delivery attempt failed."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class PublishResult(BaseModel):
    """Outcome of one publish."""

    delivered: bool = False
    attempts: int = Field(default=0, ge=0)
    status: str = Field(default="pending", description="delivered/failed/disabled/circuit_open")
    error: Optional[str] = None


class CircuitBreaker:
    """Consecutive-failure circuit breaker persisted between publisher processes."""

    def __init__(self, path: Path, failure_threshold: int = 5, cooldown_seconds: float = 300.0,
                 clock: Callable[[], float] = time.time):
        self.state_file = StateFile(path)
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock

    def _load(self) -> Dict[str, Any]:
        data = self.state_file.read()
        return {
            "consecutive_failures": int(data.get("consecutive_failures", 0)),
            "opened_until": float(data.get("opened_until", 0.0)),
        }

    def allow(self) -> bool:
        """False while the circuit is open."""
        try:
            state = self._load()
        except (CycleStateError, TypeError, ValueError) as e:
            logger.warning(f"Circuit state unreadable, allowing publish: {e}")
            return True
        return self.clock() >= state["opened_until"]

    def record_success(self) -> None:
        self._update(success=True)

    def record_failure(self) -> None:
        self._update(success=False)

    def _update(self, success: bool) -> None:
        try:
            with self.state_file.locked(CIRCUIT_LOCK_TIMEOUT):
                state = self._load()
                if success:
                    state = {"consecutive_failures": 0, "opened_until": 0.0}
                else:
                    state["consecutive_failures"] += 1
                    if state["consecutive_failures"] >= self.failure_threshold:
                        state["opened_until"] = self.clock() + self.cooldown_seconds
                        logger.warning(
                            f"Circuit opened after {state['consecutive_failures']} failures "
                            f"for {self.cooldown_seconds:.0f}s"
                        )
                self.state_file.write(state)
        except (CycleStateError, TypeError, ValueError) as e:
            logger.warning(f"Could not update circuit state: {e}")


class RemotePublisher:
    """Forwards LogRecords to the Langfuse ingestion API."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        spawn: Callable[..., subprocess.Popen] = subprocess.Popen,
        circuit: Optional[CircuitBreaker] = None,
    ):
        self.settings = settings or get_settings()
        self.transport = transport
        self._sleep = sleep
        self._spawn = spawn
        self.event_factory = EventFactory(trace_name=self.settings.langfuse.trace_name)
        self.circuit = circuit or CircuitBreaker(
            Path(self.settings.storage.circuit_file),
            failure_threshold=self.settings.publisher.failure_threshold,
            cooldown_seconds=self.settings.publisher.cooldown_seconds,
        )

    def is_configured(self) -> bool:
        """Endpoint and both credentials present, and publishing not switched off."""
        return self.settings.remote_enabled

    def publish_async(self, record: LogRecord) -> bool:
        """Hand the record to a detached child process; never blocks, never raises.

        Returns True when a child was started.
        """
        if not self.is_configured():
            logger.debug("Remote publishing not configured, skipping")
            return False

        env = os.environ.copy()
        env["PYTHONPATH"] = os.pathsep.join(
            p for p in (str(PROJECT_ROOT), env.get("PYTHONPATH", "")) if p
        )
        try:
            process = self._spawn(
                [sys.executable, "-m", "services.commit_tracker.publisher"],
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
                close_fds=True,
                env=env,
            )
            process.stdin.write((record.to_line() + "\n").encode("utf-8"))
            process.stdin.close()
            # The child outlives us and is never waited on.
            process.returncode = 0
        except (OSError, ValueError) as e:
            logger.info(f"Could not start remote publisher: {e}")
            return False

        logger.debug(f"Dispatched remote publish for {record.commit_hash} (pid {process.pid})")
        return True

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        config = self.settings.publisher
        return min(config.backoff_base_seconds * (2 ** (attempt - 1)), config.backoff_max_seconds)

    def _client(self) -> httpx.AsyncClient:
        langfuse = self.settings.langfuse
        return httpx.AsyncClient(
            base_url=langfuse.host,
            auth=(langfuse.public_key, langfuse.secret_key.get_secret_value()),
            timeout=httpx.Timeout(self.settings.publisher.timeout_seconds),
            transport=self.transport,
        )

    async def _attempt(self, client: httpx.AsyncClient, payload: Dict[str, Any]) -> None:
        try:
            response = await client.post(INGESTION_PATH, json=payload)
        except httpx.TimeoutException as e:
            raise PublishError(f"Timed out: {e}") from e
        except httpx.TransportError as e:
            raise PublishError(f"Transport error: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise PublishError(f"HTTP {response.status_code}")
        if response.status_code >= 400:
            raise PublishError(f"HTTP {response.status_code}: {response.text[:200]}", retryable=False)

        try:
            result = IngestionResponse.from_payload(response.json())
        except ValueError:
            result = IngestionResponse()
        if result.has_errors:
            raise PublishError(f"Ingestion rejected events: {result.errors}", retryable=False)

    async def publish(self, record: LogRecord) -> PublishResult:
        """Deliver one record with retries; failures are only logged."""
        if not self.is_configured():
            return PublishResult(status="disabled")

        if not self.circuit.allow():
            logger.warning(f"Circuit open, not publishing {record.commit_hash}")
            return PublishResult(status="circuit_open")

        payload = EventSerializer.to_payload(self.event_factory.create_batch([record]))
        max_attempts = self.settings.publisher.max_attempts
        last_error = None
        attempts = 0

        async with self._client() as client:
            for attempt in range(1, max_attempts + 1):
                attempts = attempt
                try:
                    await self._attempt(client, payload)
                except PublishError as e:
                    last_error = str(e)
                    logger.warning(
                        f"Publish attempt {attempt}/{max_attempts} for {record.commit_hash} failed: {e}"
                    )
                    if not e.retryable:
                        break
                    if attempt < max_attempts:
                        await self._sleep(self.backoff_delay(attempt))
                    continue

                self.circuit.record_success()
                logger.info(f"Published {record.commit_hash} in {attempt} attempt(s)")
                return PublishResult(delivered=True, attempts=attempt, status="delivered")

        self.circuit.record_failure()
        logger.error(f"Giving up on {record.commit_hash} after {attempts} attempt(s): {last_error}")
        return PublishResult(attempts=attempts, status="failed", error=last_error)


def _configure_diagnostics(path: Path) -> None:
    """Route this process's logging to the diagnostics trail only."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(path, encoding="utf-8")
    except OSError:
        handler = logging.NullHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    logging.basicConfig(level=logging.INFO, handlers=[handler], force=True)


def main() -> int:
    """Child process entry point: publish the record read from stdin."""
    try:
        settings = get_settings()
        _configure_diagnostics(Path(settings.storage.diagnostics_file))
        line = sys.stdin.buffer.read().decode("utf-8").strip()
        if not line:
            logger.warning("No record received on stdin")
            return 0
        record = LogRecord.parse_line(line)
        result = asyncio.run(RemotePublisher(settings).publish(record))
        logger.debug(f"Publish result: {result.model_dump()}")
    except Exception as e:
        logger.error(f"Remote publisher crashed: {e}", exc_info=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
