"""Stops background services on the predecessor.

Each service gets ``systemctl stop`` first and ``pkill -f`` if that fails.
Services are stopped concurrently and independently. Every command is
dispatched detached so a predecessor that drops the connection while
shutting down does not hang the pipeline.

``quiesce()`` never raises: the predecessor is being retired either way,
so anything we could not stop is reported in ``failed`` and logged.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
from collections.abc import Sequence
from dataclasses import dataclass, field

from runner_sync.config.handoff_config import HandoffConfig
from runner_sync.core.error_handler import RunnerSyncError
from runner_sync.execution.ssh_executor import DetachedOutcome, DetachedState, SSHExecutor
from runner_sync.models.peer import Candidate
from runner_sync.utils.exceptions import log_and_continue

logger = logging.getLogger(__name__)

__all__ = ["QuiesceResult", "ServiceQuiescer", "self_excluding_pattern"]

# pkill exits 1 when nothing matched, i.e. the service was not running
PKILL_NO_MATCH = 1

_ERE_SPECIAL = set(".[]()*+?{}|^$\\")


def self_excluding_pattern(service: str) -> str:
    """``pkill -f`` regex for ``service`` that cannot match its own command line.

    The shells that carry the kill (the ssh session and the nohup wrapper)
    have the pattern in their argv. With the first alphanumeric character
    in a bracket class the regex ``[c]loudflared`` still matches
    ``cloudflared`` but not the literal text ``[c]loudflared``.

    >>> self_excluding_pattern("cloudflared")
    '[c]loudflared'
    >>> self_excluding_pattern("http.server")
    '[h]ttp\\\\.server'
    """
    parts = []
    bracketed = False
    for char in service:
        if not bracketed and char.isalnum():
            parts.append(f"[{char}]")
            bracketed = True
        elif char in _ERE_SPECIAL:
            parts.append("\\" + char)
        else:
            parts.append(char)
    return "".join(parts)


@dataclass(frozen=True)
class QuiesceResult:
    stopped: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {"stopped": list(self.stopped), "failed": list(self.failed)}


@dataclass(frozen=True)
class _ServiceOutcome:
    name: str
    stopped: bool
    method: str = ""
    attempts: list[DetachedOutcome] = field(default_factory=list, compare=False)


class ServiceQuiescer:
    def __init__(self, config: HandoffConfig, executor: SSHExecutor):
        self.config = config
        self.executor = executor

    @staticmethod
    def graceful_command(service: str) -> str:
        return f"sudo systemctl stop {shlex.quote(service)}"

    @staticmethod
    def forceful_command(service: str) -> str:
        return f"sudo pkill -f {shlex.quote(self_excluding_pattern(service))}"

    async def _stop_one(self, target: str, service: str) -> _ServiceOutcome:
        wait = self.config.stop_wait_seconds
        graceful = await self.executor.dispatch_detached(target, self.graceful_command(service), wait)
        if graceful.succeeded:
            logger.info(f"Stopped {service} via systemctl")
            return _ServiceOutcome(service, True, "systemctl", [graceful])
        if not graceful.dispatched:
            logger.warning(f"Could not reach predecessor to stop {service}: {graceful.detail}")
            return _ServiceOutcome(service, False, attempts=[graceful])

        logger.debug(f"systemctl stop {service} exited {graceful.exit_code}, trying pkill")
        forceful = await self.executor.dispatch_detached(target, self.forceful_command(service), wait)
        if forceful.succeeded or (
            forceful.state == DetachedState.FINISHED and forceful.exit_code == PKILL_NO_MATCH
        ):
            logger.info(f"Stopped {service} via pkill")
            return _ServiceOutcome(service, True, "pkill", [graceful, forceful])

        logger.warning(f"Failed to stop {service}: {forceful.detail or f'exit {forceful.exit_code}'}")
        return _ServiceOutcome(service, False, attempts=[graceful, forceful])

    async def quiesce(self, predecessor: Candidate, service_names: Sequence[str]) -> QuiesceResult:
        """Stop ``service_names`` on the predecessor. Never raises."""
        services = [name for name in service_names if name]
        if not services:
            return QuiesceResult()

        target = predecessor.ssh_target
        if target is None:
            logger.warning(f"Predecessor {predecessor.peer.display_name} has no address; skipping service stop")
            return QuiesceResult(failed=tuple(services))

        logger.info(f"Stopping services on {target}: {', '.join(services)}")
        outcomes = await asyncio.gather(
            *(self._stop_one(target, service) for service in services),
            return_exceptions=True,
        )

        stopped: list[str] = []
        failed: list[str] = []
        for service, outcome in zip(services, outcomes):
            if isinstance(outcome, RunnerSyncError):
                logger.warning(f"Failed to stop {service}: {outcome.message}")
                failed.append(service)
            elif isinstance(outcome, BaseException):
                log_and_continue(outcome, f"stop {service}", logger)
                failed.append(service)
            elif outcome.stopped:
                stopped.append(service)
            else:
                failed.append(service)

        return QuiesceResult(stopped=tuple(stopped), failed=tuple(failed))
