"""External health check that restarts the supervisor when it is missing or stalled.

Run periodically (e.g. from cron). Progress is compared against the synced count
recorded by the previous invocation in a small JSON state file.
"""

import json
import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from dotenv import dotenv_values

from .config import load_settings
from .logging_config import configure_logging, get_audit_logger, log_watchdog_check
from .sync_ledger import SyncRepository

logger = get_audit_logger("watchdog")

HEALTHY = "healthy"
RESTARTED_MISSING = "restarted_missing"
RESTARTED_STALLED = "restarted_stalled"

SUPERVISOR_PATTERN = r"opencouncil(-supervisor|\.core\.supervisor)"
SUPERVISOR_COMMAND = [sys.executable, "-m", "opencouncil.core.supervisor"]
WORKER_PATTERN = r"opencouncil\.cli\.worker worker --once"


class SupervisorProcess:
    """Find, stop and start the supervisor process by command-line pattern."""

    def __init__(
        self,
        pattern: str = SUPERVISOR_PATTERN,
        command: Optional[List[str]] = None,
        env_file: Optional[Path] = Path(".env"),
        worker_pattern: str = WORKER_PATTERN
    ):
        self.pattern = pattern
        self.worker_pattern = worker_pattern
        self.command = command or SUPERVISOR_COMMAND
        self.env_file = env_file

    def find_pids(self) -> List[int]:
        result = subprocess.run(["pgrep", "-f", self.pattern], capture_output=True, text=True)
        if result.returncode != 0:
            return []
        return [int(pid) for pid in result.stdout.split()]

    def is_running(self) -> bool:
        return bool(self.find_pids())

    def kill(self) -> None:
        """Stop the supervisor together with the worker it is waiting on."""
        own_group = os.getpgrp()
        for pid in self.find_pids():
            try:
                group = os.getpgid(pid)
                if group == own_group:
                    os.kill(pid, signal.SIGTERM)
                else:
                    os.killpg(group, signal.SIGTERM)
            except ProcessLookupError:
                continue
            logger.info("supervisor_killed", pid=pid, process_group=group)

        # Workers outside the supervisor's group; pkill exits 1 when nothing matched.
        subprocess.run(["pkill", "-f", self.worker_pattern], capture_output=True)

    def start(self) -> None:
        env = dict(os.environ)
        if self.env_file is not None and Path(self.env_file).exists():
            env.update({k: v for k, v in dotenv_values(self.env_file).items() if v is not None})
        subprocess.Popen(
            self.command,
            cwd=os.getcwd(),
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        logger.info("supervisor_started", command=" ".join(self.command))


class HealthWatchdog:
    """Compares ingestion progress across invocations and heals the supervisor."""

    def __init__(
        self,
        sync_repo: SyncRepository,
        process: SupervisorProcess,
        state_file: Path = Path("ingestion-state.json"),
        clock: Callable[[], float] = time.time
    ):
        self.sync_repo = sync_repo
        self.process = process
        self.state_file = Path(state_file)
        self.clock = clock

    def load_state(self) -> Dict[str, Any]:
        state = {"synced": -1, "timestamp": 0}
        if not self.state_file.exists():
            return state
        try:
            with open(self.state_file, "r") as f:
                state.update(json.load(f))
        except (OSError, ValueError) as e:
            logger.warning("state_file_unreadable", path=str(self.state_file), error=str(e))
        return state

    def save_state(self, synced: int) -> None:
        with open(self.state_file, "w") as f:
            json.dump({"synced": synced, "timestamp": int(self.clock() * 1000)}, f)

    def check_and_heal(self) -> str:
        stats = self.sync_repo.stats()
        last_state = self.load_state()
        self.save_state(stats.synced)

        if not self.process.is_running():
            outcome = RESTARTED_MISSING
            self.process.start()
        elif stats.pending > 0 and stats.synced == last_state["synced"]:
            outcome = RESTARTED_STALLED
            self.process.kill()
            self.process.start()
        else:
            outcome = HEALTHY

        log_watchdog_check(
            logger,
            outcome=outcome,
            synced=stats.synced,
            previous_synced=last_state["synced"],
            pending=stats.pending,
        )
        return outcome


def main() -> int:
    settings = load_settings()
    configure_logging(settings.log_level, settings.json_logs)
    watchdog = HealthWatchdog(
        SyncRepository(settings.database_url),
        SupervisorProcess(),
        state_file=settings.watchdog_state_file,
    )
    print(watchdog.check_and_heal())
    return 0


if __name__ == "__main__":
    sys.exit(main())
