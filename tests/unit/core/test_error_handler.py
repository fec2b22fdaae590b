"""Tests for error_handler.py."""

import pytest

from runner_sync.core.error_handler import (
    DataSyncError,
    DirectoryUnavailable,
    NetworkError,
    ProcessError,
    RunnerSyncError,
    SyncError,
    ValidationError,
    exit_code_for,
    format_error,
)


class TestExitCodes:
    """Each error class maps to its exit code."""

    @pytest.mark.parametrize("error,code", [
        (RunnerSyncError("x"), 1),
        (ValidationError("x"), 2),
        (NetworkError("x"), 3),
        (DirectoryUnavailable("x"), 3),
        (ProcessError("x"), 4),
        (SyncError("x"), 5),
        (DataSyncError("x"), 5),
        (RuntimeError("x"), 1),
    ])
    def test_exit_code_for(self, error, code):
        assert exit_code_for(error) == code

    def test_hierarchy(self):
        assert issubclass(DirectoryUnavailable, NetworkError)
        assert issubclass(DataSyncError, SyncError)


class TestFormatError:
    """Tests for format_error()."""

    def test_default_hint(self):
        text = format_error(ValidationError("TAILSCALE_CLIENT_ID is required"))
        assert text.startswith("ValidationError: TAILSCALE_CLIENT_ID is required")
        assert "\n  Hint: " in text

    def test_explicit_hint_overrides_default(self):
        error = ProcessError("rsync not found", hint="apt-get install rsync")
        assert error.hint == "apt-get install rsync"
        assert format_error(error).endswith("Hint: apt-get install rsync")

    def test_empty_hint_omitted(self):
        assert format_error(SyncError("boom", hint="")) == "SyncError: boom"

    def test_foreign_exception(self):
        assert format_error(KeyError("k")) == "KeyError: 'k'"

    def test_data_sync_error_keeps_last_failure(self):
        error = DataSyncError("all transports failed", last_failure="scp: connection closed")
        assert error.last_failure == "scp: connection closed"
        assert error.message == "all transports failed"
