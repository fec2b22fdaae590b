"""Tests for git_publisher.py."""

from unittest.mock import patch

import pytest

from runner_sync.coordination.retry_strategies import ConstantDelayStrategy
from runner_sync.core.error_handler import ProcessError
from runner_sync.publishing.git_publisher import (
    BOT_EMAIL,
    BOT_NAME,
    GitPublisher,
    PublishStatus,
)
from runner_sync.utils.async_utils import SubprocessResult

MODULE = "runner_sync.publishing.git_publisher"


class FakeGit:
    """Scripted git: answers by subcommand."""

    def __init__(self, staged=True, push_failures=0, identity=True, repo=True):
        self.staged = staged
        self.push_failures = push_failures
        self.identity = identity
        self.repo = repo
        self.calls: list[list[str]] = []

    async def run(self, cmd, **kwargs):
        args = list(cmd[1:])
        self.calls.append(args)
        sub = args[0]
        if sub == "rev-parse" and args[1] == "--is-inside-work-tree":
            return SubprocessResult(0 if self.repo else 128, "true\n" if self.repo else "", "")
        if sub == "rev-parse":
            return SubprocessResult(0, "abc123\n", "")
        if sub == "diff":
            return SubprocessResult(1 if self.staged else 0, "", "")
        if sub == "config" and len(args) == 2:
            return SubprocessResult(0 if self.identity else 1, "someone\n" if self.identity else "", "")
        if sub == "push":
            if self.push_failures:
                self.push_failures -= 1
                return SubprocessResult(1, "", "rejected: fetch first")
            return SubprocessResult(0, "", "")
        return SubprocessResult(0, "", "")

    def ran(self, sub):
        return [c for c in self.calls if c[0] == sub]


def publisher_for(config):
    return GitPublisher(config, strategy=ConstantDelayStrategy(max_attempts=3, delay=0))


class TestPublish:
    """Tests for GitPublisher.publish()."""

    @pytest.mark.asyncio
    async def test_commit_and_push(self, config):
        """Changes are committed and pushed to the configured branch."""
        git = FakeGit()
        with patch(f"{MODULE}.async_subprocess_run", side_effect=git.run):
            result = await publisher_for(config).publish()

        assert result.status == PublishStatus.PUSHED
        assert result.commit == "abc123"
        assert result.attempts == 1
        assert git.ran("add") == [["add", "--", ".runner-data"]]
        commit = git.ran("commit")[0]
        assert commit[2].startswith("[runner-sync] Update .runner-data at ")
        assert git.ran("push") == [["push", "origin", "main"]]
        assert (config.runner_data_dir / ".gitkeep").exists()

    @pytest.mark.asyncio
    async def test_no_changes(self, config):
        """Nothing staged means no commit and no push."""
        git = FakeGit(staged=False)
        with patch(f"{MODULE}.async_subprocess_run", side_effect=git.run):
            result = await publisher_for(config).publish()

        assert result.status == PublishStatus.NO_CHANGES
        assert git.ran("commit") == []
        assert git.ran("push") == []

    @pytest.mark.asyncio
    async def test_push_retried_then_succeeds(self, config):
        """Push failures are retried."""
        git = FakeGit(push_failures=2)
        with patch(f"{MODULE}.async_subprocess_run", side_effect=git.run):
            result = await publisher_for(config).publish()
        assert result.status == PublishStatus.PUSHED
        assert result.attempts == 3
        assert len(git.ran("push")) == 3

    @pytest.mark.asyncio
    async def test_push_exhausted_raises_process_error(self, config):
        """After the fixed number of attempts a ProcessError is raised."""
        git = FakeGit(push_failures=10)
        with patch(f"{MODULE}.async_subprocess_run", side_effect=git.run):
            with pytest.raises(ProcessError) as exc_info:
                await publisher_for(config).publish()
        assert len(git.ran("push")) == 3
        assert "rejected" in exc_info.value.message
        assert exc_info.value.exit_code == 4

    @pytest.mark.asyncio
    async def test_sets_bot_identity_when_missing(self, config):
        """A missing git identity is filled with the bot identity."""
        git = FakeGit(identity=False)
        with patch(f"{MODULE}.async_subprocess_run", side_effect=git.run):
            await publisher_for(config).publish()
        assert ["config", "user.name", BOT_NAME] in git.calls
        assert ["config", "user.email", BOT_EMAIL] in git.calls

    @pytest.mark.asyncio
    async def test_not_a_repository(self, config):
        """Publishing outside a repository is a ProcessError."""
        git = FakeGit(repo=False)
        with patch(f"{MODULE}.async_subprocess_run", side_effect=git.run):
            with pytest.raises(ProcessError):
                await publisher_for(config).publish()
        assert git.ran("add") == []

    @pytest.mark.asyncio
    async def test_git_missing(self, config):
        """A missing git binary is a ProcessError with a hint."""
        with patch(f"{MODULE}.async_subprocess_run", side_effect=FileNotFoundError()):
            with pytest.raises(ProcessError) as exc_info:
                await publisher_for(config).publish()
        assert exc_info.value.hint

    def test_default_strategy_from_config(self, make_config):
        """The retry policy follows the configured count and delay."""
        publisher = GitPublisher(make_config(publish_retries=5, publish_retry_delay=1.5))
        assert publisher.strategy.max_attempts == 5
        assert publisher.strategy.delay == 1.5
