"""Wire the engine components for one repository."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from specx.audit.log import AuditLog, JsonlAuditSink
from specx.clock import utc_now
from specx.config import load_config
from specx.handoff.engine import HandoffEngine
from specx.repository import SpecRepository
from specx.router.agents import load_agents
from specx.router.planner import TaskRouter
from specx.state.lock import SpecLockManager
from specx.state.manager import WorkflowStateManager
from specx.state.store import StateStore
from specx.validation.validator import AssignmentValidator

if TYPE_CHECKING:
    from pathlib import Path

    from specx.audit.log import AuditSink
    from specx.clock import Clock
    from specx.config import EngineConfig
    from specx.router.agents import AgentRegistry


@dataclass(frozen=True)
class Engine:
    config: EngineConfig
    registry: AgentRegistry
    repository: SpecRepository
    store: StateStore
    locks: SpecLockManager
    audit: AuditLog
    router: TaskRouter
    validator: AssignmentValidator
    manager: WorkflowStateManager
    handoff: HandoffEngine


def build_engine(
    repo_root: Path,
    *,
    config: EngineConfig | None = None,
    audit_sink: AuditSink | None = None,
    clock: Clock = utc_now,
) -> Engine:
    """Load config and agent registry from `repo_root` and connect every component."""
    resolved = config if config is not None else load_config(repo_root)
    registry = load_agents(resolved.repo_root)
    sink = audit_sink if audit_sink is not None else JsonlAuditSink(
        resolved.audit_path, lock_timeout=resolved.lock_timeout_seconds
    )
    audit = AuditLog(sink, clock=clock)

    repository = SpecRepository(resolved.specs_dir)
    store = StateStore(resolved.store_path, lock_timeout=resolved.lock_timeout_seconds)
    locks = SpecLockManager(
        resolved.lock_dir,
        timeout=resolved.lock_timeout_seconds,
        stale_after=resolved.lock_stale_seconds,
        audit=audit,
    )
    router = TaskRouter(
        repository,
        registry=registry,
        weights=resolved.routing_weights,
        max_alternatives=resolved.max_alternatives,
        performance_target_seconds=resolved.performance_target_seconds,
        audit=audit,
        clock=clock,
    )
    validator = AssignmentValidator(
        repository,
        store,
        registry=registry,
        max_concurrent_tasks=resolved.max_concurrent_tasks,
        stale_recommendation_seconds=resolved.stale_recommendation_seconds,
        large_task_hours=resolved.large_task_hours,
        warning_weights=resolved.warning_weights,
        audit=audit,
        clock=clock,
    )
    manager = WorkflowStateManager(
        repository,
        store,
        locks,
        validator,
        audit,
        performance_target_seconds=resolved.performance_target_seconds,
        clock=clock,
    )
    handoff = HandoffEngine(repository, manager, audit)
    manager.handoff = handoff

    return Engine(
        config=resolved,
        registry=registry,
        repository=repository,
        store=store,
        locks=locks,
        audit=audit,
        router=router,
        validator=validator,
        manager=manager,
        handoff=handoff,
    )
