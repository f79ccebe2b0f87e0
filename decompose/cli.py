"""Main CLI entry point for the decomposition engine."""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from . import __version__, db
from .collaboration import ReviewerDecision
from .complexity import Agent
from .config import settings
from .models import Base, ResolutionKind, Step, Task
from .navigation import ChainDirection
from .service import DecompositionService

console = Console()

T = TypeVar("T")

STATUS_STYLES = {
    "pending": "dim",
    "producer_draft": "cyan",
    "reviewer_review": "blue",
    "agreed": "green",
    "disputed": "red",
    "user_resolution": "magenta",
}


def run_async(factory: Callable[[], Awaitable[T]]) -> T:
    """Run a coroutine to completion and release the engine afterwards."""

    async def runner() -> T:
        try:
            return await factory()
        finally:
            await db.dispose_engine()

    return asyncio.run(runner())


def _progress(value: float | None) -> str:
    pct = (value or 0.0) * 100
    color = "green" if pct >= 100 else "yellow" if pct > 0 else "dim"
    return f"[{color}]{pct:.0f}%[/{color}]"


def _status(value: str) -> str:
    style = STATUS_STYLES.get(value, "white")
    return f"[{style}]{value}[/{style}]"


@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", default=None, help="Logging level (defaults to DECOMPOSE_LOG_LEVEL)")
def main(log_level: str | None) -> None:
    """Collaborative task-decomposition engine CLI.

    Build project/task/step hierarchies, refine steps through the
    producer/reviewer protocol and promote over-complex steps into tasks.
    """
    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


@main.command(name="init-db")
def init_db() -> None:
    """Create all tables (for development/testing)."""
    run_async(db.init_db)
    console.print("[green]✓[/green] Database schema created")


@main.command(name="schema-check", help="Check DB schema readiness for current code.")
def schema_check() -> None:
    from sqlalchemy import inspect

    async def check() -> set[str]:
        if db.engine is None:
            db.configure_engine()
        assert db.engine is not None
        async with db.engine.connect() as conn:
            tables = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
        return set(Base.metadata.tables) - tables

    missing = run_async(check)
    if missing:
        console.print(f"[red]Missing tables: {sorted(missing)}[/red]")
        console.print("Run: `alembic upgrade head` or `decompose init-db`")
        raise SystemExit(1)
    console.print("[green]Schema ready[/green]")


# =============================================================================
# Hierarchy
# =============================================================================


@main.command(name="create-project")
@click.argument("name")
@click.argument("description")
@click.option("--threshold", type=float, default=None, help="Complexity threshold in [0, 1]")
@click.option("--max-iterations", type=int, default=None, help="Revision budget per step")
def create_project(
    name: str, description: str, threshold: float | None, max_iterations: int | None
) -> None:
    """Create a new project.

    DESCRIPTION: What the project is about; drives generated content.
    """

    async def create() -> Any:
        return await DecompositionService().create_project(name, description, threshold, max_iterations)

    project = run_async(create)
    console.print(f"[green]✓[/green] Created project: {project.name}")
    console.print(f"  ID: {project.id}")
    console.print(
        f"  Threshold: {project.complexity_threshold}  Max iterations: {project.max_iterations}"
    )


@main.command(name="add-tasks")
@click.argument("project_id")
@click.argument("tasks", nargs=-1, required=True)
@click.option("--parent", "parent_task_id", default=None, help="Create under this task instead of the root")
def add_tasks(project_id: str, tasks: tuple[str, ...], parent_task_id: str | None) -> None:
    """Add tasks to a project.

    TASKS: One or more "title" or "title::objective" entries, in order.
    """
    entries = []
    for raw in tasks:
        title, _, objective = raw.partition("::")
        entries.append({"title": title.strip(), "objective": objective.strip()})

    async def add() -> list[Task]:
        service = DecompositionService()
        if parent_task_id is None:
            return await service.define_root_tasks(project_id, entries)
        created: list[Task] = []
        for entry in entries:
            created.append(
                await service.create_task(
                    project_id,
                    entry["title"],
                    entry["objective"],
                    parent_task_id=parent_task_id,
                    prev_ref=created[-1].ref if created else None,
                )
            )
        return created

    for task in run_async(add):
        console.print(f"[green]✓[/green] {task.id}  {task.title}")


@main.command(name="add-step")
@click.argument("task_id")
@click.argument("title")
@click.option("--prev", "prev_ref", default=None, help="Previous item, e.g. step:<id>")
@click.option("--next", "next_ref", default=None, help="Next item, e.g. task:<id>")
def add_step(task_id: str, title: str, prev_ref: str | None, next_ref: str | None) -> None:
    """Add a step to a task."""

    async def add() -> Step:
        return await DecompositionService().create_step(task_id, title, prev_ref, next_ref)

    step = run_async(add)
    console.print(f"[green]✓[/green] Created step: {step.title}")
    console.print(f"  ID: {step.id}")


@main.command()
@click.argument("project_id")
def status(project_id: str) -> None:
    """Show the project hierarchy with progress and step states."""

    async def build() -> Tree:
        async with db.get_session() as session:
            project = await db.require_project(session, project_id)
            root = Tree(f"[bold]{project.name}[/bold] {_progress(project.progress)}")
            stack: list[tuple[Task, Tree]] = [
                (task, root) for task in reversed(await db.list_root_tasks(session, project_id))
            ]
            while stack:
                task, parent = stack.pop()
                branch = parent.add(f"[bold cyan]{task.title}[/bold cyan] {_progress(task.progress)}")
                for step in await db.list_steps(session, task.id):
                    flag = " [red]⇪[/red]" if step.should_promote else ""
                    branch.add(f"{step.title} {_status(step.status)}{flag} [dim]{step.id}[/dim]")
                for child in reversed(await db.list_child_tasks(session, task.id)):
                    stack.append((child, branch))
            return root

    console.print(run_async(build))


@main.command()
@click.argument("project_id")
def rebuild(project_id: str) -> None:
    """Recompute every progress value of a project."""

    async def do_rebuild() -> Any:
        return await DecompositionService().rebuild_progress(project_id)

    project = run_async(do_rebuild)
    console.print(f"[green]✓[/green] Progress rebuilt: {_progress(project.progress)}")


# =============================================================================
# Collaboration
# =============================================================================


@main.command()
@click.argument("step_id")
@click.argument("content")
@click.option("--reasoning", "-r", default=None, help="Producer reasoning")
@click.option("--focus", default=None, help="Focus hint for the draft")
@click.option("--not-ready", is_flag=True, help="Keep the draft open instead of sending it to review")
def submit(step_id: str, content: str, reasoning: str | None, focus: str | None, not_ready: bool) -> None:
    """Submit producer content for a step."""

    async def do_submit() -> Step:
        return await DecompositionService().submit_producer_content(
            step_id, content, reasoning, focus_hint=focus, ready=not not_ready
        )

    step = run_async(do_submit)
    console.print(f"[green]✓[/green] Step {step.title}: {_status(step.status)}")


@main.command()
@click.argument("step_id")
@click.option("--approve/--revise", default=None, help="Reviewer verdict (omit with --auto)")
@click.option("--content", default=None, help="Refined final content")
@click.option("--feedback", "-f", default=None, help="Feedback for the producer")
@click.option("--auto", is_flag=True, help="Let the generation backend review")
@click.option("--timeout", type=float, default=None, help="Backend timeout in seconds")
def review(
    step_id: str,
    approve: bool | None,
    content: str | None,
    feedback: str | None,
    auto: bool,
    timeout: float | None,
) -> None:
    """Record a reviewer decision for a step."""
    if not auto and approve is None:
        raise click.UsageError("Pass --approve or --revise, or use --auto")

    async def do_review() -> Step:
        service = DecompositionService()
        if auto:
            return await service.review_step(step_id, timeout=timeout)
        assert approve is not None
        return await service.submit_reviewer_decision(
            step_id, ReviewerDecision(approve=approve, final_content=content, feedback=feedback)
        )

    step = run_async(do_review)
    console.print(
        f"[green]✓[/green] Step {step.title}: {_status(step.status)} "
        f"(iteration {step.iteration_count})"
    )
    if step.status == "disputed":
        console.print("[yellow]![/yellow] Iteration limit reached; a dispute was opened")


@main.command()
@click.argument("step_id")
@click.option("--focus", default=None, help="Focus hint for the draft")
@click.option("--timeout", type=float, default=None, help="Backend timeout in seconds")
def draft(step_id: str, focus: str | None, timeout: float | None) -> None:
    """Let the generation backend draft a step."""

    async def do_draft() -> Step:
        return await DecompositionService().draft_step(step_id, focus_hint=focus, timeout=timeout)

    step = run_async(do_draft)
    console.print(Panel(step.producer_content or "", title=f"{step.title} ({step.status})"))


# =============================================================================
# Complexity & promotion
# =============================================================================


@main.command()
@click.argument("step_id")
@click.argument("agent", type=click.Choice([a.value for a in Agent]))
@click.option("--timeout", type=float, default=None, help="Backend timeout in seconds")
def analyze(step_id: str, agent: str, timeout: float | None) -> None:
    """Record one agent's complexity assessment of a step."""

    async def do_analyze() -> Any:
        return await DecompositionService().analyze_complexity(step_id, agent, timeout=timeout)

    assessment = run_async(do_analyze)
    console.print(
        Panel(
            f"Level: [bold]{assessment.level.value}[/bold]\n"
            f"Score: {assessment.score:.2f}  Confidence: {assessment.confidence:.2f}\n"
            f"Promote: {'yes' if assessment.should_promote else 'no'}\n"
            f"Reasoning: {assessment.reasoning}",
            title=f"{agent} assessment",
        )
    )


@main.command()
@click.argument("project_id")
@click.option("--max-iterations", type=int, default=None, help="Maximum optimization passes")
@click.option("--force", is_flag=True, help="Re-analyze steps that were already analyzed")
@click.option("--timeout", type=float, default=None, help="Backend timeout in seconds")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
def optimize(
    project_id: str, max_iterations: int | None, force: bool, timeout: float | None, as_json: bool
) -> None:
    """Analyze steps and promote over-complex ones until convergence."""

    async def do_optimize() -> Any:
        return await DecompositionService().run_promotion_optimization(
            project_id, max_iterations=max_iterations, force_reanalysis=force, timeout=timeout
        )

    result = run_async(do_optimize)
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    state = "[green]converged[/green]" if result.converged else "[yellow]not converged[/yellow]"
    console.print(
        f"Optimization {state} after {result.iterations} pass(es) ({result.stop_reason}); "
        f"analyzed {result.analyzed}, promoted {result.total_promotions}"
    )
    if result.promotions:
        table = Table(title="Promotions")
        table.add_column("Step", style="cyan")
        table.add_column("New task")
        table.add_column("Children")
        table.add_column("Score")
        table.add_column("Method")
        for p in result.promotions:
            table.add_row(p.step_title, p.task_id, str(len(p.child_step_ids)), f"{p.score:.2f}", p.method)
        console.print(table)


# =============================================================================
# Disputes
# =============================================================================


@main.command(name="disputes")
@click.option("--project", "project_id", default=None, help="Only disputes of this project")
def list_disputes(project_id: str | None) -> None:
    """List pending disputes."""

    async def do_list() -> Any:
        return await DecompositionService().list_pending_disputes(project_id)

    pending = run_async(do_list)
    if not pending:
        console.print("[green]No pending disputes[/green]")
        return

    table = Table(title="Pending disputes")
    table.add_column("ID", style="cyan")
    table.add_column("Step")
    table.add_column("Producer")
    table.add_column("Reviewer")
    table.add_column("Opened")
    for d in pending:
        table.add_row(
            d.id,
            d.step_id,
            (d.producer_content or "")[:40],
            (d.reviewer_reasoning or d.reviewer_content or "")[:40],
            d.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@main.command()
@click.argument("dispute_id")
@click.argument("resolution", type=click.Choice([k.value for k in ResolutionKind]))
@click.option("--content", default=None, help="Resolved content (custom/hybrid)")
@click.option("--by", "resolved_by", default="human", help="Who resolved the dispute")
def resolve(dispute_id: str, resolution: str, content: str | None, resolved_by: str) -> None:
    """Resolve a dispute."""

    async def do_resolve() -> Step:
        return await DecompositionService().resolve_dispute(
            dispute_id, resolution, custom_content=content, resolved_by=resolved_by
        )

    step = run_async(do_resolve)
    console.print(f"[green]✓[/green] Step {step.title}: {_status(step.status)}")


# =============================================================================
# Navigation & audit
# =============================================================================


@main.command(name="next")
@click.argument("project_id")
def next_item(project_id: str) -> None:
    """Show the next actionable item of a project."""

    async def find() -> Any:
        return await DecompositionService().get_next_actionable_item(project_id)

    item = run_async(find)
    if item is None:
        console.print("[green]Project complete: nothing left to do[/green]")
        return
    console.print(f"[bold]{item.ref}[/bold]  {item.title}  {_progress(item.progress)}")
    if item.status:
        console.print(f"  Status: {_status(item.status)}")


@main.command()
@click.argument("ref")
@click.option(
    "--direction",
    type=click.Choice([d.value for d in ChainDirection]),
    default=ChainDirection.FORWARD.value,
    help="Which links to follow",
)
@click.option("--max-depth", type=int, default=None, help="Maximum hops per direction")
@click.option("--stop-at-incomplete", is_flag=True, help="Stop at the first incomplete item")
def chain(ref: str, direction: str, max_depth: int | None, stop_at_incomplete: bool) -> None:
    """Walk the prev/next chain from REF (task:<id> or step:<id>)."""

    async def walk() -> Any:
        return await DecompositionService().walk_chain(
            ref, direction, max_depth=max_depth, stop_at_incomplete=stop_at_incomplete
        )

    result = run_async(walk)
    table = Table(title=f"Chain from {ref}")
    table.add_column("#", justify="right")
    table.add_column("Ref", style="cyan")
    table.add_column("Title")
    table.add_column("Progress")
    for link in result.items:
        table.add_row(str(link.distance), link.ref.format(), link.title, _progress(link.progress))
    console.print(table)
    if result.truncated:
        console.print("[yellow]Depth limit reached[/yellow]")
    if result.stopped_at:
        console.print(f"Stopped at incomplete item {result.stopped_at}")


@main.command()
@click.argument("project_id")
@click.option("--limit", default=50, help="Number of entries to show")
def audit(project_id: str, limit: int) -> None:
    """Show the audit trail of a project."""

    async def load() -> Any:
        return await DecompositionService().list_audit_log(project_id, limit=limit)

    entries = run_async(load)
    table = Table(title="Audit log")
    table.add_column("Time")
    table.add_column("Action", style="cyan")
    table.add_column("Entity")
    table.add_column("Message")
    for e in entries:
        table.add_row(
            e.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            e.action,
            f"{e.entity_kind}:{e.entity_id[:8]}",
            e.message or "",
        )
    console.print(table)


if __name__ == "__main__":
    main()
