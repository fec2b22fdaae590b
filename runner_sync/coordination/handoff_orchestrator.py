"""Handoff pipeline.

Runs the handoff as a fixed sequence of stages:

    BOOTSTRAPPING -> JOINING_OVERLAY -> DISCOVERING -> RECONCILING -> QUIESCING -> PUBLISHING

Which stages are enabled is decided once, when the plan is built, from the
configuration. Stages run strictly one after another. When discovery finds
no predecessor the three stages after it are skipped; that decision lives
in the orchestrator, the configuration is never touched.

The first stage that raises stops the pipeline. Its failure is recorded,
logged and re-raised; stages that already completed are not undone.

Usage:
    from runner_sync.coordination.handoff_orchestrator import (
        HandoffOrchestrator,
        PipelineMode,
    )

    orchestrator = HandoffOrchestrator(config)
    report = await orchestrator.run(orchestrator.plan(PipelineMode.SYNC))
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from runner_sync.config.handoff_config import HandoffConfig
from runner_sync.coordination.data_reconciler import DataReconciler
from runner_sync.coordination.predecessor_selector import PredecessorSelector
from runner_sync.coordination.service_quiescer import ServiceQuiescer
from runner_sync.core.workspace import ensure_directories, write_metadata
from runner_sync.execution.ssh_executor import SSHConfig, SSHExecutor
from runner_sync.models.peer import Candidate
from runner_sync.providers.tailscale_directory import TailscaleDirectory
from runner_sync.publishing.git_publisher import GitPublisher

logger = logging.getLogger(__name__)

__all__ = [
    "HandoffOrchestrator",
    "HandoffPlan",
    "HandoffReport",
    "HandoffStage",
    "PipelineMode",
    "PlannedStage",
    "StageResult",
    "StageState",
]


class HandoffStage(Enum):
    BOOTSTRAPPING = "bootstrapping"
    JOINING_OVERLAY = "joining_overlay"
    DISCOVERING = "discovering"
    RECONCILING = "reconciling"
    QUIESCING = "quiescing"
    PUBLISHING = "publishing"


STAGE_ORDER = tuple(HandoffStage)

# Stages with nothing to do when discovery found no predecessor
PREDECESSOR_STAGES = frozenset({
    HandoffStage.RECONCILING,
    HandoffStage.QUIESCING,
    HandoffStage.PUBLISHING,
})

OVERLAY_STAGES = frozenset({
    HandoffStage.JOINING_OVERLAY,
    HandoffStage.DISCOVERING,
    HandoffStage.RECONCILING,
    HandoffStage.QUIESCING,
})


class StageState(Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class PipelineMode(Enum):
    SYNC = "sync"
    DISCOVER = "discover"
    PUBLISH = "publish"


@dataclass(frozen=True)
class PlannedStage:
    stage: HandoffStage
    enabled: bool


@dataclass(frozen=True)
class HandoffPlan:
    """Ordered stages with their enabled flags. Read-only once built."""

    stages: tuple[PlannedStage, ...]

    def is_enabled(self, stage: HandoffStage) -> bool:
        return any(p.stage == stage and p.enabled for p in self.stages)

    @property
    def enabled_stages(self) -> list[HandoffStage]:
        return [p.stage for p in self.stages if p.enabled]

    @classmethod
    def build(cls, config: HandoffConfig, mode: PipelineMode = PipelineMode.SYNC) -> HandoffPlan:
        if mode == PipelineMode.PUBLISH:
            enabled = {HandoffStage.PUBLISHING}
        else:
            enabled = {HandoffStage.BOOTSTRAPPING}
            if config.overlay_enabled:
                enabled |= OVERLAY_STAGES
            if config.publish_enabled:
                enabled.add(HandoffStage.PUBLISHING)
            if mode == PipelineMode.DISCOVER:
                enabled &= {HandoffStage.BOOTSTRAPPING, HandoffStage.JOINING_OVERLAY, HandoffStage.DISCOVERING}
        return cls(stages=tuple(PlannedStage(stage, stage in enabled) for stage in STAGE_ORDER))


@dataclass(frozen=True)
class StageResult:
    stage: HandoffStage
    state: StageState
    detail: Mapping[str, Any] = field(default_factory=dict)
    duration_seconds: float = 0.0
    error: str | None = None

    def __post_init__(self) -> None:
        # Snapshot the handler's dict; the result is read-only from here on
        object.__setattr__(self, "detail", MappingProxyType(dict(self.detail)))


@dataclass(frozen=True)
class HandoffReport:
    results: Mapping[HandoffStage, StageResult]
    predecessor: Candidate | None = None

    def state_of(self, stage: HandoffStage) -> StageState | None:
        result = self.results.get(stage)
        return result.state if result else None


class HandoffOrchestrator:
    """Sequences the handoff stages and owns their results."""

    def __init__(
        self,
        config: HandoffConfig,
        directory: TailscaleDirectory | None = None,
        executor: SSHExecutor | None = None,
        selector: PredecessorSelector | None = None,
        reconciler: DataReconciler | None = None,
        quiescer: ServiceQuiescer | None = None,
        publisher: GitPublisher | None = None,
    ):
        self.config = config
        self.directory = directory or TailscaleDirectory(config)
        self.executor = executor or SSHExecutor(SSHConfig.from_handoff(config))
        self.selector = selector or PredecessorSelector(config, self.directory, self.executor)
        self.reconciler = reconciler or DataReconciler(config, self.executor)
        self.quiescer = quiescer or ServiceQuiescer(config, self.executor)
        self.publisher = publisher or GitPublisher(config)

        self._results: dict[HandoffStage, StageResult] = {}
        self._predecessor: Candidate | None = None
        self._discovered = False

    @property
    def results(self) -> Mapping[HandoffStage, StageResult]:
        return MappingProxyType(self._results)

    @property
    def predecessor(self) -> Candidate | None:
        return self._predecessor

    def plan(self, mode: PipelineMode = PipelineMode.SYNC) -> HandoffPlan:
        self.config.raise_if_invalid()
        plan = HandoffPlan.build(self.config, mode)
        logger.debug(f"Plan ({mode.value}): {[s.value for s in plan.enabled_stages]}")
        return plan

    # =========================================================================
    # Stages
    # =========================================================================

    async def _bootstrap(self) -> dict[str, Any]:
        created = ensure_directories(self.config)
        metadata_path = write_metadata(self.config)
        return {
            "created": [str(p) for p in created],
            "metadata_path": str(metadata_path) if metadata_path else None,
        }

    async def _join(self) -> dict[str, Any]:
        joined = await self.directory.join()
        return {"ip": joined.ip, "hostname": joined.hostname}

    async def _discover(self) -> dict[str, Any]:
        discovery = await self.selector.discover()
        self._predecessor = discovery.selected
        self._discovered = True
        selected = discovery.selected
        return {
            "peers_listed": discovery.peers_listed,
            "candidates": len(discovery.candidates),
            "reachable": len(discovery.reachable),
            "predecessor": selected.peer.display_name if selected else None,
            "predecessor_target": selected.ssh_target if selected else None,
            "data_path": selected.remote_data_path if selected else None,
        }

    async def _reconcile(self) -> dict[str, Any]:
        return (await self.reconciler.reconcile(self._predecessor)).to_dict()

    async def _quiesce(self) -> dict[str, Any]:
        result = await self.quiescer.quiesce(self._predecessor, self.config.services_to_stop)
        return result.to_dict()

    async def _publish(self) -> dict[str, Any]:
        return (await self.publisher.publish()).to_dict()

    def _handler(self, stage: HandoffStage) -> Callable[[], Awaitable[dict[str, Any]]]:
        return {
            HandoffStage.BOOTSTRAPPING: self._bootstrap,
            HandoffStage.JOINING_OVERLAY: self._join,
            HandoffStage.DISCOVERING: self._discover,
            HandoffStage.RECONCILING: self._reconcile,
            HandoffStage.QUIESCING: self._quiesce,
            HandoffStage.PUBLISHING: self._publish,
        }[stage]

    # =========================================================================
    # Execution
    # =========================================================================

    def _skip_reason(self, plan: HandoffPlan, stage: HandoffStage) -> str | None:
        if not plan.is_enabled(stage):
            return "disabled"
        if (
            stage in PREDECESSOR_STAGES
            and plan.is_enabled(HandoffStage.DISCOVERING)
            and self._discovered
            and self._predecessor is None
        ):
            return "no predecessor"
        return None

    async def run(self, plan: HandoffPlan) -> HandoffReport:
        """Execute ``plan``.

        Raises:
            RunnerSyncError: Whatever the failing stage raised.
        """
        for planned in plan.stages:
            stage = planned.stage
            reason = self._skip_reason(plan, stage)
            if reason is not None:
                logger.debug(f"Skipping {stage.value}: {reason}")
                self._results[stage] = StageResult(stage, StageState.SKIPPED, {"reason": reason})
                continue

            logger.info(f"Stage: {stage.value}")
            start = time.monotonic()
            try:
                detail = await self._handler(stage)()
            except Exception as e:
                duration = time.monotonic() - start
                self._results[stage] = StageResult(
                    stage, StageState.FAILED, duration_seconds=duration, error=str(e),
                )
                logger.error(f"Stage {stage.value} failed after {duration:.1f}s: {e}")
                raise
            self._results[stage] = StageResult(
                stage, StageState.COMPLETED, detail, duration_seconds=time.monotonic() - start,
            )

        return HandoffReport(results=dict(self._results), predecessor=self._predecessor)
