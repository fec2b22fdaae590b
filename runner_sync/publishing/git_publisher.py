"""Publishes recovered working data to the repository.

Stages ``.runner-data``, commits it when something changed and pushes to
the configured branch. Only the push is retried; a commit either works
the first time or points at a broken checkout.

Usage:
    from runner_sync.publishing.git_publisher import GitPublisher

    result = await GitPublisher(config).publish()
    if result.status == PublishStatus.NO_CHANGES:
        ...
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from runner_sync.config.handoff_config import RUNNER_DATA_DIR, HandoffConfig
from runner_sync.coordination.retry_strategies import (
    ConstantDelayStrategy,
    RetryContext,
    RetryExhaustedError,
    RetryStrategy,
    run_with_retry,
)
from runner_sync.core.error_handler import ProcessError
from runner_sync.utils.async_utils import (
    SubprocessResult,
    SubprocessTimeoutError,
    async_subprocess_run,
)
from runner_sync.utils.exceptions import FS_ERRORS

logger = logging.getLogger(__name__)

__all__ = ["GitPublisher", "PublishResult", "PublishStatus"]

BOT_NAME = "Automation Bot"
BOT_EMAIL = "bot@automation.local"
COMMIT_PREFIX = "[runner-sync]"
GIT_TIMEOUT = 60.0
PUSH_TIMEOUT = 120.0


class PublishStatus(Enum):
    PUSHED = "pushed"
    NO_CHANGES = "no_changes"


@dataclass(frozen=True)
class PublishResult:
    status: PublishStatus
    branch: str
    commit: str | None = None
    attempts: int = 0

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "branch": self.branch,
            "commit": self.commit,
            "attempts": self.attempts,
        }


class GitPublisher:
    def __init__(self, config: HandoffConfig, strategy: RetryStrategy | None = None):
        self.config = config
        self.strategy = strategy or ConstantDelayStrategy(
            max_attempts=config.publish_retries,
            delay=config.publish_retry_delay,
        )

    async def _git(self, *args: str, timeout: float = GIT_TIMEOUT) -> SubprocessResult:
        cmd = ["git", *args]
        try:
            return await async_subprocess_run(cmd, timeout=timeout, cwd=str(self.config.cwd))
        except SubprocessTimeoutError:
            raise ProcessError(f"git {args[0]} timed out after {timeout:.0f}s")
        except FileNotFoundError:
            raise ProcessError("git executable not found", hint="Install git on the runner image.")

    async def _git_checked(self, *args: str, timeout: float = GIT_TIMEOUT) -> SubprocessResult:
        result = await self._git(*args, timeout=timeout)
        if not result.success:
            raise ProcessError(
                f"git {' '.join(args)} failed with code {result.returncode}: {result.stderr.strip()}"
            )
        return result

    async def _ensure_repository(self) -> None:
        result = await self._git("rev-parse", "--is-inside-work-tree")
        if not result.success or result.stdout.strip() != "true":
            raise ProcessError(
                f"{self.config.cwd} is not a git repository",
                hint="Run inside the checked-out repository or pass --cwd.",
            )

    async def _ensure_identity(self) -> None:
        for key, value in (("user.name", BOT_NAME), ("user.email", BOT_EMAIL)):
            current = await self._git("config", key)
            if not current.stdout.strip():
                logger.debug(f"Setting git {key} to {value}")
                await self._git_checked("config", key, value)

    def _touch_placeholder(self) -> None:
        """Make sure the data directory exists in git even when empty."""
        data_dir = self.config.runner_data_dir
        keep = data_dir / ".gitkeep"
        try:
            data_dir.mkdir(parents=True, exist_ok=True)
            if not keep.exists():
                keep.write_text(f"# runner-sync {datetime.now(timezone.utc).isoformat()}\n")
        except FS_ERRORS as e:
            raise ProcessError(f"Cannot write {keep}: {e}")

    async def _push(self) -> None:
        await self._git_checked("push", "origin", self.config.publish_branch, timeout=PUSH_TIMEOUT)

    async def publish(self) -> PublishResult:
        """Commit and push ``.runner-data`` if it changed.

        Raises:
            ProcessError: Not a repository, commit failed, or every push attempt failed.
        """
        branch = self.config.publish_branch
        await self._ensure_repository()
        self._touch_placeholder()

        await self._git_checked("add", "--", RUNNER_DATA_DIR)
        staged = await self._git("diff", "--cached", "--quiet", "--", RUNNER_DATA_DIR)
        if staged.success:
            logger.info("No changes to publish")
            return PublishResult(status=PublishStatus.NO_CHANGES, branch=branch)

        await self._ensure_identity()
        timestamp = datetime.now(timezone.utc).isoformat()
        await self._git_checked("commit", "-m", f"{COMMIT_PREFIX} Update {RUNNER_DATA_DIR} at {timestamp}")
        head = await self._git("rev-parse", "HEAD")
        commit = head.stdout.strip() if head.success else None

        logger.info(f"Pushing to origin/{branch}...")
        ctx = RetryContext(target=f"origin/{branch}", operation="git push")
        try:
            await run_with_retry(self._push, self.strategy, ctx, retry_on=(ProcessError,))
        except RetryExhaustedError as e:
            last = ctx.last_error
            raise ProcessError(
                f"git push failed after {ctx.attempt} attempts: {last.message if isinstance(last, ProcessError) else last}",
                hint="Check the push credentials and that the branch is not protected.",
            ) from e

        logger.info(f"Published {RUNNER_DATA_DIR} to origin/{branch}")
        return PublishResult(status=PublishStatus.PUSHED, branch=branch, commit=commit, attempts=ctx.attempt + 1)
