"""SpecX CLI - task routing and workflow state commands."""

import json
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from specx import __version__
from specx.audit.log import EVENT_TYPES, AuditFilter
from specx.commands import complete_current, start_next
from specx.config import ensure_default_config, load_config
from specx.engine import Engine, build_engine
from specx.errors import ConfigError, EngineError
from specx.router.agents import ensure_default_agents
from specx.router.reporting import recommendation_to_dict, render_explanation
from specx.router.types import RouteFilters, TaskRef, TaskStatus

cli = typer.Typer(
    name="specx",
    help="SpecX - task routing and workflow state synchronization",
    no_args_is_help=True,
)
console = Console()

state_app = typer.Typer(help="Inspect and repair persisted workflow state.", no_args_is_help=True)
cli.add_typer(state_app, name="state")

audit_app = typer.Typer(help="Read the append-only audit log.", no_args_is_help=True)
cli.add_typer(audit_app, name="audit")


def _version_option_callback(value: bool) -> None:
    """Handle eager --version option."""
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@cli.callback()
def _cli_callback(
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show debug logging.",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        help="Show SpecX version and exit.",
        is_eager=True,
        callback=_version_option_callback,
    ),
) -> None:
    """Configure logging for every invocation."""
    _ = version
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _load_engine(repo_root: Path) -> Engine:
    try:
        return build_engine(repo_root)
    except ConfigError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc} ({exc.reason_code})")
        raise typer.Exit(1) from exc


def _echo_json(payload: object) -> None:
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))


def _print_suggestions(suggestions: tuple[str, ...] | list[str]) -> None:
    for line in suggestions:
        console.print(f"[yellow]  - {line}[/yellow]")


def _parse_ref(spec: str | None, task: str) -> TaskRef:
    try:
        return TaskRef.parse(task, default_spec=spec or "")
    except ValueError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(1) from exc


@cli.command(name="init")
def init_cmd(
    repo_root: Path = typer.Option(
        Path("."),
        "--repo-root",
        help="Repository root path",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Overwrite existing config.yaml and agents.yaml",
    ),
) -> None:
    """Create repo-local config, agent registry and specs directory."""
    try:
        config_path = ensure_default_config(repo_root, force=force)
        agents_path = ensure_default_agents(repo_root, force=force)
        config = load_config(repo_root)
    except FileExistsError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        console.print("[yellow]Use --force to overwrite.[/yellow]")
        raise typer.Exit(1) from exc
    except ConfigError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(1) from exc

    config.specs_dir.mkdir(parents=True, exist_ok=True)
    config.state_dir.mkdir(parents=True, exist_ok=True)

    console.print("[green]✓ SpecX initialized[/green]")
    console.print(f"[cyan]Config:[/cyan] {config_path}")
    console.print(f"[cyan]Agents:[/cyan] {agents_path}")
    console.print(f"[cyan]Specs:[/cyan] {config.specs_dir}")


@cli.command(name="next")
def next_cmd(
    agent: str = typer.Option(..., "--agent", help="Agent type to route for"),
    repo_root: Path = typer.Option(Path("."), "--repo-root", help="Repository root path"),
    priority: list[str] = typer.Option([], "--priority", help="Priority filter (repeatable and/or comma-separated)"),
    phase: list[str] = typer.Option([], "--phase", help="Spec phase filter (repeatable and/or comma-separated)"),
    spec_status: list[str] = typer.Option([], "--spec-status", help="Spec status filter"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Recommend and validate without assigning"),
    confirm_critical: bool = typer.Option(False, "--confirm-critical", help="Confirm taking a P0 task"),
    override_workload: bool = typer.Option(False, "--override-workload", help="Allow exceeding the workload limit"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
) -> None:
    """Pick, validate and assign the next task for an agent."""
    try:
        filters = RouteFilters.from_strings(priorities=priority, phases=phase, spec_statuses=spec_status)
    except ValueError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(1) from exc

    engine = _load_engine(repo_root)
    result = start_next(
        engine,
        agent,
        filters,
        dry_run=dry_run,
        confirm_critical=confirm_critical,
        override_workload=override_workload,
    )

    if as_json:
        _echo_json(result.to_dict())
    elif result.success:
        recommendation = result.recommendation
        task = recommendation.task if recommendation is not None else None
        if result.dry_run:
            console.print(f"[cyan]Would assign:[/cyan] {task.ref.key if task else 'none'}")
        elif result.assignment is not None:
            console.print(f"[green]✓ Assigned {result.assignment.ref.key} to {result.agent}[/green]")
        if task is not None:
            console.print(f"[cyan]Title:[/cyan] {task.title}")
        if result.validation is not None:
            console.print(f"[cyan]Confidence:[/cyan] {result.validation.confidence:.2f}")
            for warning in result.validation.warnings:
                console.print(f"[yellow]Warning:[/yellow] {warning.message}")
        if recommendation is not None:
            for line in recommendation.reasoning:
                console.print(f"  {line}")
    else:
        if result.error_kind is None:
            console.print(f"[yellow]{result.error}[/yellow]")
        else:
            console.print(f"[bold red]Error:[/bold red] {result.error} ({result.error_kind.value})")
        if result.validation is not None:
            for violation in result.validation.violations:
                console.print(f"[red]  - {violation.message}[/red]")
        _print_suggestions(result.suggestions)

    if not result.success:
        raise typer.Exit(2 if result.refused else 1)


@cli.command(name="complete")
def complete_cmd(
    repo_root: Path = typer.Option(Path("."), "--repo-root", help="Repository root path"),
    agent: str | None = typer.Option(None, "--agent", help="Agent completing its current task"),
    spec: str | None = typer.Option(None, "--spec", help="Spec id"),
    task: str | None = typer.Option(None, "--task", help="Task id or SPEC:TASK"),
    notes: str | None = typer.Option(None, "--notes", help="Completion notes"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would change without writing"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
) -> None:
    """Complete the current task and unblock its dependents."""
    engine = _load_engine(repo_root)
    result = complete_current(engine, agent=agent, spec_id=spec, task_id=task, notes=notes, dry_run=dry_run)

    if as_json:
        _echo_json(result.to_dict())
    elif result.success and result.dry_run:
        console.print(f"[cyan]Would complete:[/cyan] {result.task.key if result.task else 'none'}")
        for ref in result.would_unblock:
            console.print(f"[cyan]  would unblock:[/cyan] {ref.key}")
    elif result.success and result.completion is not None:
        completion = result.completion
        console.print(f"[green]✓ Completed {completion.ref.key}[/green]")
        if completion.duration_hours is not None:
            console.print(f"[cyan]Duration:[/cyan] {completion.duration_hours:.2f}h")
        for item in completion.handoff_errors:
            console.print(f"[yellow]Warning:[/yellow] could not unblock {item['task']}: {item['message']}")
        _print_suggestions(result.suggestions)
    else:
        kind = result.error_kind.value if result.error_kind is not None else "error"
        console.print(f"[bold red]Error:[/bold red] {result.error} ({kind})")
        _print_suggestions(result.suggestions)

    if not result.success:
        raise typer.Exit(1)


@cli.command(name="explain")
def explain_cmd(
    agent: str = typer.Option(..., "--agent", help="Agent type to route for"),
    repo_root: Path = typer.Option(Path("."), "--repo-root", help="Repository root path"),
    priority: list[str] = typer.Option([], "--priority", help="Priority filter"),
    phase: list[str] = typer.Option([], "--phase", help="Spec phase filter"),
    spec_status: list[str] = typer.Option([], "--spec-status", help="Spec status filter"),
    as_json: bool = typer.Option(False, "--json", help="Print the recommendation as JSON"),
) -> None:
    """Explain the routing decision for an agent without assigning."""
    engine = _load_engine(repo_root)
    try:
        filters = RouteFilters.from_strings(priorities=priority, phases=phase, spec_statuses=spec_status)
        recommendation = engine.router.recommend(agent, filters)
    except (ValueError, EngineError) as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(1) from exc

    if as_json:
        _echo_json(recommendation_to_dict(recommendation, engine.router.weights))
    else:
        typer.echo(render_explanation(recommendation))


@cli.command(name="assignments")
def assignments_cmd(
    repo_root: Path = typer.Option(Path("."), "--repo-root", help="Repository root path"),
    agent: str | None = typer.Option(None, "--agent", help="Only this agent's assignments"),
    as_json: bool = typer.Option(False, "--json", help="Print as JSON"),
) -> None:
    """List live assignments and per-agent workload."""
    engine = _load_engine(repo_root)
    try:
        assignments = engine.manager.list_assignments(agent)
        workloads = engine.manager.agent_workloads()
    except EngineError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(1) from exc

    if as_json:
        _echo_json(
            {
                "assignments": [item.to_dict() for item in assignments],
                "workloads": workloads,
                "max_concurrent_tasks": engine.config.max_concurrent_tasks,
            }
        )
        return

    if not assignments:
        console.print("[yellow]No active assignments.[/yellow]")
        return

    table = Table(title="Active assignments")
    table.add_column("task")
    table.add_column("agent")
    table.add_column("started_at")
    table.add_column("confidence")
    for item in assignments:
        confidence = f"{item.confidence:.2f}" if item.confidence is not None else "-"
        table.add_row(item.ref.key, item.agent_type, item.started_at or "-", confidence)
    console.print(table)
    for name, count in workloads.items():
        console.print(f"[cyan]{name}:[/cyan] {count}/{engine.config.max_concurrent_tasks}")


@cli.command(name="release")
def release_cmd(
    task: str = typer.Option(..., "--task", help="Task id or SPEC:TASK"),
    spec: str | None = typer.Option(None, "--spec", help="Spec id"),
    repo_root: Path = typer.Option(Path("."), "--repo-root", help="Repository root path"),
    agent: str | None = typer.Option(None, "--agent", help="Only release if assigned to this agent"),
    reason: str | None = typer.Option(None, "--reason", help="Why the task is handed back"),
) -> None:
    """Hand an in-progress task back to ready."""
    ref = _parse_ref(spec, task)
    engine = _load_engine(repo_root)
    result = engine.manager.release_task(ref.spec_id, ref.task_id, agent=agent, reason=reason)
    if not result.success and result.error is not None:
        console.print(f"[bold red]Error:[/bold red] {result.error.message} ({result.error.kind.value})")
        raise typer.Exit(1)
    console.print(f"[green]✓ Released {ref.key}[/green]")


@cli.command(name="deps")
def deps_cmd(
    task: str = typer.Option(..., "--task", help="Task id or SPEC:TASK"),
    spec: str | None = typer.Option(None, "--spec", help="Spec id"),
    repo_root: Path = typer.Option(Path("."), "--repo-root", help="Repository root path"),
    as_json: bool = typer.Option(False, "--json", help="Print as JSON"),
) -> None:
    """Show a task's dependencies, blockers and dependents."""
    ref = _parse_ref(spec, task)
    engine = _load_engine(repo_root)
    try:
        chain = engine.repository.dependency_chain(ref)
    except EngineError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(1) from exc

    payload = chain.to_dict()
    if as_json:
        _echo_json(payload)
        return

    console.print(f"[cyan]{payload['task']}[/cyan] ({payload['status']})")
    console.print("depends_on:")
    for item in payload["dependencies"] or [{"ref": "none", "status": "-"}]:
        console.print(f"  - {item['ref']} ({item['status']})")
    if payload["blocked_by"]:
        console.print(f"[yellow]blocked_by: {', '.join(payload['blocked_by'])}[/yellow]")
    console.print("dependents:")
    for item in payload["dependents"] or [{"ref": "none", "status": "-"}]:
        console.print(f"  - {item['ref']} ({item['status']})")


@cli.command(name="status")
def status_cmd(
    repo_root: Path = typer.Option(Path("."), "--repo-root", help="Repository root path"),
    spec: str | None = typer.Option(None, "--spec", help="Only this spec"),
    as_json: bool = typer.Option(False, "--json", help="Print as JSON"),
) -> None:
    """Show progress per spec and for the whole project."""
    engine = _load_engine(repo_root)
    try:
        if spec is not None:
            specs = [engine.manager.spec_progress(spec)]
            payload = specs[0].to_dict()
        else:
            project = engine.manager.project_progress()
            specs = list(project.specs)
            payload = project.to_dict()
            payload["handoffs"] = engine.handoff.status().to_dict()
    except EngineError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(1) from exc

    if as_json:
        _echo_json(payload)
        return

    table = Table(title="Spec progress")
    table.add_column("spec")
    table.add_column("status")
    table.add_column("phase")
    table.add_column("done")
    table.add_column("in progress")
    table.add_column("blocked")
    for item in specs:
        table.add_row(
            item.spec_id,
            item.status.value,
            item.phase or "-",
            f"{item.completed_tasks}/{item.total_tasks} ({item.percentage}%)",
            str(item.counts[TaskStatus.IN_PROGRESS.value]),
            str(item.counts[TaskStatus.BLOCKED.value]),
        )
    console.print(table)
    if spec is None:
        console.print(
            f"[cyan]Project:[/cyan] {payload['completed_tasks']}/{payload['total_tasks']} task(s) "
            f"complete ({payload['percentage']}%)"
        )
        handoffs = payload["handoffs"]
        console.print(
            f"[cyan]Handoffs:[/cyan] {handoffs['cascades']} cascade(s), "
            f"{handoffs['unblocked']} unblocked, {handoffs['errors']} error(s)"
        )


@cli.command(name="handoff")
def handoff_cmd(
    task: str = typer.Option(..., "--task", help="Completed task id or SPEC:TASK"),
    spec: str | None = typer.Option(None, "--spec", help="Spec id"),
    repo_root: Path = typer.Option(Path("."), "--repo-root", help="Repository root path"),
    as_json: bool = typer.Option(False, "--json", help="Print as JSON"),
) -> None:
    """Re-run the unblock cascade for a completed task."""
    ref = _parse_ref(spec, task)
    engine = _load_engine(repo_root)
    try:
        completed = engine.repository.get_task(ref.spec_id, ref.task_id)
    except EngineError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(1) from exc
    if completed.status is not TaskStatus.COMPLETE:
        console.print(f"[bold red]Error:[/bold red] {ref.key} is {completed.status.value}, not complete")
        raise typer.Exit(1)

    try:
        with engine.locks.hold(ref.spec_id):
            report = engine.handoff.cascade(ref)
    except EngineError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(1) from exc

    if as_json:
        _echo_json(report.to_dict())
    else:
        console.print(f"[green]✓ Unblocked {len(report.unblocked)} task(s)[/green]")
        for unblocked in report.unblocked:
            console.print(f"  - {unblocked.key}")
        for item in report.errors:
            console.print(f"[yellow]Warning:[/yellow] could not unblock {item['task']}: {item['message']}")
    if report.errors:
        raise typer.Exit(1)


@state_app.command(name="check")
def state_check(
    repo_root: Path = typer.Option(Path("."), "--repo-root", help="Repository root path"),
    spec: str | None = typer.Option(None, "--spec", help="Only check this spec"),
    as_json: bool = typer.Option(False, "--json", help="Print as JSON"),
) -> None:
    """Compare spec documents with the task store."""
    engine = _load_engine(repo_root)
    try:
        report = engine.manager.check_consistency(spec)
    except EngineError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(1) from exc

    if as_json:
        _echo_json(report.to_dict())
    elif report.ok:
        console.print("[green]✓ Spec documents and task store agree[/green]")
        if report.missing_in_store:
            console.print(
                f"[yellow]{len(report.missing_in_store)} task(s) not yet in the store; run `specx state sync`[/yellow]"
            )
    else:
        for item in report.mismatches:
            console.print(f"[red]  - {item['task']}: {', '.join(item['fields'])}[/red]")
        for key in report.orphaned_in_store:
            console.print(f"[red]  - {key}: in store but not in any spec document[/red]")

    if not report.ok:
        raise typer.Exit(1)


@state_app.command(name="sync")
def state_sync(
    repo_root: Path = typer.Option(Path("."), "--repo-root", help="Repository root path"),
    spec: str | None = typer.Option(None, "--spec", help="Only seed this spec"),
) -> None:
    """Seed the task store with tasks it has not seen yet."""
    engine = _load_engine(repo_root)
    try:
        seeded = engine.manager.sync_store(spec)
    except EngineError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(1) from exc

    console.print(f"[green]✓ Seeded {len(seeded)} task(s)[/green]")
    for key in seeded:
        console.print(f"  - {key}")


@audit_app.command(name="export")
def audit_export(
    repo_root: Path = typer.Option(Path("."), "--repo-root", help="Repository root path"),
    event_type: list[str] = typer.Option([], "--event-type", help=f"Event type filter ({', '.join(EVENT_TYPES)})"),
    task: str | None = typer.Option(None, "--task", help="Only events for SPEC:TASK"),
    agent: str | None = typer.Option(None, "--agent", help="Only events for this agent"),
    out: Path | None = typer.Option(None, "--out", help="Write JSON to this path instead of stdout"),
) -> None:
    """Export audit events in insertion order."""
    engine = _load_engine(repo_root)
    audit_filter = AuditFilter(event_types=frozenset(event_type), task=task, agent=agent)
    try:
        events = engine.audit.export(audit_filter)
    except EngineError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(1) from exc

    if out is None:
        _echo_json(events)
        return

    resolved_out = out if out.is_absolute() else (repo_root / out)
    resolved_out.parent.mkdir(parents=True, exist_ok=True)
    resolved_out.write_text(json.dumps(events, indent=2, sort_keys=True), encoding="utf-8")
    console.print(f"[green]✓ Exported {len(events)} event(s)[/green]")
    console.print(f"[cyan]Path:[/cyan] {resolved_out}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
