"""Unit tests for the external health watchdog."""

import json
import signal
from unittest.mock import MagicMock, patch

import pytest

from opencouncil.core.health_watchdog import (
    HEALTHY,
    RESTARTED_MISSING,
    RESTARTED_STALLED,
    HealthWatchdog,
    WORKER_PATTERN,
    SupervisorProcess,
)
from opencouncil.core.models import SyncStats


@pytest.fixture
def state_file(tmp_path):
    return tmp_path / "ingestion-state.json"


def _watchdog(state_file, stats, running=True):
    sync_repo = MagicMock()
    sync_repo.stats.return_value = stats
    process = MagicMock(spec=SupervisorProcess)
    process.is_running.return_value = running
    return HealthWatchdog(sync_repo, process, state_file, clock=lambda: 1700000000.0), process


class TestCheckAndHeal:
    def test_missing_supervisor_is_started(self, state_file):
        watchdog, process = _watchdog(state_file, SyncStats(total=5, synced=2, pending=3), running=False)

        assert watchdog.check_and_heal() == RESTARTED_MISSING
        process.start.assert_called_once()
        process.kill.assert_not_called()

    def test_stalled_supervisor_is_restarted(self, state_file):
        state_file.write_text(json.dumps({"synced": 2, "timestamp": 0}))
        watchdog, process = _watchdog(state_file, SyncStats(total=5, synced=2, pending=3))

        assert watchdog.check_and_heal() == RESTARTED_STALLED
        process.kill.assert_called_once()
        process.start.assert_called_once()

    def test_progress_is_healthy(self, state_file):
        state_file.write_text(json.dumps({"synced": 1, "timestamp": 0}))
        watchdog, process = _watchdog(state_file, SyncStats(total=5, synced=2, pending=3))

        assert watchdog.check_and_heal() == HEALTHY
        process.start.assert_not_called()

    def test_empty_queue_is_healthy(self, state_file):
        state_file.write_text(json.dumps({"synced": 5, "timestamp": 0}))
        watchdog, _ = _watchdog(state_file, SyncStats(total=5, synced=5, pending=0))
        assert watchdog.check_and_heal() == HEALTHY

    def test_first_run_is_healthy(self, state_file):
        watchdog, _ = _watchdog(state_file, SyncStats(total=5, synced=0, pending=5))
        assert watchdog.check_and_heal() == HEALTHY

    def test_state_is_persisted(self, state_file):
        watchdog, _ = _watchdog(state_file, SyncStats(total=5, synced=4, pending=1))
        watchdog.check_and_heal()
        assert json.loads(state_file.read_text()) == {"synced": 4, "timestamp": 1700000000000}

    def test_corrupt_state_file_is_tolerated(self, state_file):
        state_file.write_text("{not json")
        watchdog, _ = _watchdog(state_file, SyncStats(total=1, synced=0, pending=1))
        assert watchdog.check_and_heal() == HEALTHY


class TestSupervisorProcess:
    def test_is_running_uses_pgrep(self):
        completed = MagicMock(returncode=0, stdout="4242\n")
        with patch("opencouncil.core.health_watchdog.subprocess.run", return_value=completed) as run:
            assert SupervisorProcess(pattern="opencouncil-supervisor").is_running() is True
        assert run.call_args.args[0] == ["pgrep", "-f", "opencouncil-supervisor"]

    def test_not_running(self):
        completed = MagicMock(returncode=1, stdout="")
        with patch("opencouncil.core.health_watchdog.subprocess.run", return_value=completed):
            assert SupervisorProcess().is_running() is False

    def test_start_detaches_with_env_file(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("DATABASE_URL=postgresql://db/test\n")
        with patch("opencouncil.core.health_watchdog.subprocess.Popen") as popen:
            SupervisorProcess(command=["supervisor"], env_file=env_file).start()

        kwargs = popen.call_args.kwargs
        assert popen.call_args.args[0] == ["supervisor"]
        assert kwargs["start_new_session"] is True
        assert kwargs["env"]["DATABASE_URL"] == "postgresql://db/test"

    def test_kill_stops_supervisor_process_group_and_workers(self):
        pgrep = MagicMock(returncode=0, stdout="4242\n")
        with patch("opencouncil.core.health_watchdog.subprocess.run", return_value=pgrep) as run, \
                patch("opencouncil.core.health_watchdog.os.getpgrp", return_value=100), \
                patch("opencouncil.core.health_watchdog.os.getpgid", return_value=4242), \
                patch("opencouncil.core.health_watchdog.os.killpg") as killpg:
            SupervisorProcess().kill()

        killpg.assert_called_once_with(4242, signal.SIGTERM)
        assert run.call_args_list[-1].args[0] == ["pkill", "-f", WORKER_PATTERN]

    def test_kill_in_own_group_signals_only_the_supervisor(self):
        pgrep = MagicMock(returncode=0, stdout="4242\n")
        with patch("opencouncil.core.health_watchdog.subprocess.run", return_value=pgrep) as run, \
                patch("opencouncil.core.health_watchdog.os.getpgrp", return_value=100), \
                patch("opencouncil.core.health_watchdog.os.getpgid", return_value=100), \
                patch("opencouncil.core.health_watchdog.os.kill") as kill, \
                patch("opencouncil.core.health_watchdog.os.killpg") as killpg:
            SupervisorProcess().kill()

        kill.assert_called_once_with(4242, signal.SIGTERM)
        killpg.assert_not_called()
        assert run.call_args_list[-1].args[0] == ["pkill", "-f", WORKER_PATTERN]

    def test_kill_tolerates_exited_process(self):
        pgrep = MagicMock(returncode=0, stdout="4242\n")
        with patch("opencouncil.core.health_watchdog.subprocess.run", return_value=pgrep), \
                patch("opencouncil.core.health_watchdog.os.getpgrp", return_value=100), \
                patch("opencouncil.core.health_watchdog.os.getpgid", side_effect=ProcessLookupError), \
                patch("opencouncil.core.health_watchdog.os.killpg") as killpg:
            SupervisorProcess().kill()

        killpg.assert_not_called()
