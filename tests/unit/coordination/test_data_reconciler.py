"""Tests for data_reconciler.py."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from runner_sync.coordination.data_reconciler import DataReconciler, RemoteDirState
from runner_sync.core.error_handler import DataSyncError, SyncError
from runner_sync.models.peer import Candidate
from runner_sync.utils.async_utils import SubprocessResult, SubprocessTimeoutError
from tests.factories import peer

MODULE = "runner_sync.coordination.data_reconciler"
REMOTE_DIR = "/home/runner/work/app/app/.runner-data"


def predecessor(ip="100.64.0.2", path=REMOTE_DIR):
    return Candidate(
        peer=peer("old", ip),
        reachable=True,
        has_working_data=True,
        remote_user="runner",
        remote_data_path=path,
    )


def executor_reporting(state: str | None):
    executor = MagicMock()
    executor.capture = AsyncMock(return_value=state)
    return executor


RSYNC_STATS = "Number of files: 3\nTotal transferred file size: 2,048 bytes\n"


class TestRemoteState:
    """Tests for empty and missing remote directories."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", ["empty", "missing"])
    async def test_empty_or_missing_is_zero_byte_success(self, config, state):
        """Nothing to pull is a success with zero bytes and no transfer."""
        reconciler = DataReconciler(config, executor_reporting(state))
        run = AsyncMock()
        with patch(f"{MODULE}.async_subprocess_run", run):
            result = await reconciler.reconcile(predecessor())

        assert result.transferred_bytes == 0
        assert result.skipped is True
        assert result.remote_state == RemoteDirState(state)
        run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_candidate_without_path_is_rejected(self, config):
        """A candidate with no data path cannot be reconciled."""
        reconciler = DataReconciler(config, executor_reporting("nonempty"))
        with pytest.raises(SyncError):
            await reconciler.reconcile(predecessor(path=None))


class TestTransfer:
    """Tests for rsync with scp fallback."""

    @pytest.mark.asyncio
    async def test_rsync_success_reports_stats(self, config):
        """rsync bytes come from --stats."""
        reconciler = DataReconciler(config, executor_reporting("nonempty"))
        run = AsyncMock(return_value=SubprocessResult(0, RSYNC_STATS, ""))
        with patch(f"{MODULE}.async_subprocess_run", run):
            result = await reconciler.reconcile(predecessor())

        assert result.transport == "rsync"
        assert result.transferred_bytes == 2048
        args = run.await_args.args[0]
        assert args[0] == "rsync"
        assert f"runner@100.64.0.2:{REMOTE_DIR}/" in args
        assert args[-1] == f"{config.runner_data_dir}/"
        assert run.await_args.kwargs["timeout"] == config.transfer_timeout

    @pytest.mark.asyncio
    async def test_overlay_peer_is_not_compressed(self, config):
        """Tailnet peers skip -z; others use it."""
        reconciler = DataReconciler(config, executor_reporting("nonempty"))
        run = AsyncMock(return_value=SubprocessResult(0, RSYNC_STATS, ""))
        with patch(f"{MODULE}.async_subprocess_run", run):
            await reconciler.reconcile(predecessor(ip="100.64.0.2"))
            overlay_args = run.await_args.args[0]
            await reconciler.reconcile(predecessor(ip="198.51.100.4"))
            public_args = run.await_args.args[0]
        assert "-z" not in overlay_args
        assert "-z" in public_args

    @pytest.mark.asyncio
    async def test_rsync_failure_falls_back_to_scp(self, config):
        """scp's result is used when rsync fails."""
        reconciler = DataReconciler(config, executor_reporting("nonempty"))
        local = config.runner_data_dir

        async def fake_run(cmd, **kwargs):
            if cmd[0] == "rsync":
                return SubprocessResult(12, "", "rsync: command not found")
            (local / "state.db").write_bytes(b"x" * 300)
            return SubprocessResult(0, "", "")

        with patch(f"{MODULE}.async_subprocess_run", side_effect=fake_run) as run:
            result = await reconciler.reconcile(predecessor())

        assert result.transport == "scp"
        assert result.transferred_bytes == 300
        scp_args = run.await_args_list[1].args[0]
        assert scp_args[0] == config.scp_path
        # Same directory name on both sides: copy the directory into our parent
        assert scp_args[-2] == f"runner@100.64.0.2:{REMOTE_DIR}"
        assert scp_args[-1] == str(local.parent)

    @pytest.mark.asyncio
    async def test_rerun_against_unchanged_mirror_is_zero(self, config):
        """An up-to-date mirror transfers zero bytes."""
        reconciler = DataReconciler(config, executor_reporting("nonempty"))
        unchanged = SubprocessResult(0, "Total transferred file size: 0 bytes\n", "")
        with patch(f"{MODULE}.async_subprocess_run", AsyncMock(return_value=unchanged)):
            result = await reconciler.reconcile(predecessor())
        assert result.transferred_bytes == 0
        assert result.skipped is False

    @pytest.mark.asyncio
    async def test_both_transports_fail(self, config):
        """DataSyncError carries the last failure text."""
        reconciler = DataReconciler(config, executor_reporting("nonempty"))
        run = AsyncMock(side_effect=[
            SubprocessTimeoutError("timed out"),
            SubprocessResult(1, "", "scp: Connection closed"),
        ])
        with patch(f"{MODULE}.async_subprocess_run", run):
            with pytest.raises(DataSyncError) as exc_info:
                await reconciler.reconcile(predecessor())

        assert "scp: Connection closed" in exc_info.value.last_failure
        assert exc_info.value.exit_code == 5

    @pytest.mark.asyncio
    async def test_unknown_remote_state_still_attempts_transfer(self, config):
        """If the state check fails the transfer is still tried."""
        reconciler = DataReconciler(config, executor_reporting(None))
        with patch(f"{MODULE}.async_subprocess_run", AsyncMock(return_value=SubprocessResult(0, RSYNC_STATS, ""))):
            result = await reconciler.reconcile(predecessor())
        assert result.transport == "rsync"
        assert result.remote_state == RemoteDirState.UNKNOWN
