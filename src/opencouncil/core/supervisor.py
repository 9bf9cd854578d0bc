"""Crash-resilient supervisor: one disposable worker process per file.

Each attempt runs the batch worker in a child process with BATCH_SIZE=1, so an
OOM kill or hard crash only loses the file in flight. Strikes per file are kept
in memory and reset when the supervisor restarts.
"""

import os
import subprocess
import sys
import time
from dataclasses import dataclass
from typing import Callable, Dict

from .config import load_settings
from .errors import InvalidTransition
from .logging_config import configure_logging, get_audit_logger, log_supervisor_event
from .sync_ledger import SyncRepository

logger = get_audit_logger("supervisor")

WORKER_COMMAND = [sys.executable, "-m", "opencouncil.cli.worker", "worker", "--once"]


def crash_message(strikes: int) -> str:
    return f"Supervisor: Crashed worker {strikes} times (OOM/Timeout)"


def run_worker_process() -> int:
    """Run one single-item worker attempt and return its exit code."""
    env = dict(os.environ)
    env["BATCH_SIZE"] = "1"
    completed = subprocess.run(WORKER_COMMAND, env=env, cwd=os.getcwd())
    return completed.returncode


@dataclass
class SupervisorResult:
    launched: int = 0
    crashed: int = 0
    gave_up: int = 0


class Supervisor:
    """Re-launches the worker until the pending queue is empty."""

    def __init__(
        self,
        sync_repo: SyncRepository,
        run_worker: Callable[[], int] = run_worker_process,
        max_retries_per_file: int = 3,
        cooldown_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.sync_repo = sync_repo
        self.run_worker = run_worker
        self.max_retries_per_file = max_retries_per_file
        self.cooldown_seconds = cooldown_seconds
        self.sleep = sleep
        self.strikes: Dict[str, int] = {}

    def _next_pending(self):
        pending = self.sync_repo.next_pending(1)
        return pending[0] if pending else None

    def run(self) -> SupervisorResult:
        result = SupervisorResult()
        log_supervisor_event(logger, "started", details={"max_retries_per_file": self.max_retries_per_file})

        while True:
            record = self._next_pending()
            if record is None:
                log_supervisor_event(logger, "queue_empty", details=result.__dict__)
                return result

            strikes = self.strikes.get(record.id, 0)
            if strikes >= self.max_retries_per_file:
                self._give_up(record.id, record.source_key, strikes)
                self.strikes.pop(record.id, None)
                result.gave_up += 1
                continue

            log_supervisor_event(
                logger, "launch", item_id=record.id, source_key=record.source_key, attempt=strikes + 1
            )
            exit_code = self.run_worker()
            result.launched += 1

            if exit_code == 0:
                self.strikes.pop(record.id, None)
                continue

            result.crashed += 1
            self.strikes[record.id] = strikes + 1
            log_supervisor_event(
                logger,
                "worker_crashed",
                item_id=record.id,
                source_key=record.source_key,
                attempt=strikes + 1,
                exit_code=exit_code,
            )
            self.sleep(self.cooldown_seconds)

    def _give_up(self, record_id: str, source_key: str, strikes: int) -> None:
        try:
            self.sync_repo.mark_failed(record_id, crash_message(strikes))
        except InvalidTransition as e:
            # Another writer settled the row first.
            logger.warning("give_up_skipped", item_id=record_id, error=str(e))
            return
        log_supervisor_event(logger, "gave_up", item_id=record_id, source_key=source_key, attempt=strikes)


def main() -> int:
    settings = load_settings()
    configure_logging(settings.log_level, settings.json_logs)
    supervisor = Supervisor(
        SyncRepository(settings.database_url),
        max_retries_per_file=settings.max_retries_per_file,
        cooldown_seconds=settings.supervisor_cooldown_seconds,
    )
    supervisor.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
