"""CLI entry point for TaskPilot.

Commands:
- taskpilot init: Write a default .taskpilot/config.yaml
- taskpilot images: List the allowed container images
- taskpilot run-task: Run one container task with a generation provider
- taskpilot knowledge list|get|delete: Inspect the knowledge store
"""

import importlib
import json
import logging
import sys
import threading
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from taskpilot import __version__
from taskpilot.core.actions import RUN_CONTAINER_TASK
from taskpilot.core.config import config_path_for, load_config, write_default_config
from taskpilot.core.errors import TaskPilotError
from taskpilot.core.events import BusEvent, EventKind, LogLevel
from taskpilot.core.generation import GenerateContentFn
from taskpilot.core.knowledge import KnowledgeStore
from taskpilot.core.models import Role, Turn
from taskpilot.core.runtime import build_runtime
from taskpilot.sandbox.engine import KNOWN_IMAGES
from taskpilot.task.orchestrator import END_AFTER_TASK_OPTION, PROPOSAL_OPTION

console = Console()

LEVEL_STYLES = {
    LogLevel.INFO: "dim",
    LogLevel.WARNING: "yellow",
    LogLevel.ERROR: "red",
    LogLevel.SUCCESS: "green",
}


def get_project_root() -> Path:
    """Get the project root (current directory)."""
    return Path.cwd()


def load_provider(spec: str) -> GenerateContentFn:
    """Resolve a 'module:function' generation provider."""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise click.BadParameter(f"Expected 'module:function', got '{spec}'", param_hint="--provider")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise click.BadParameter(f"Cannot import '{module_name}': {e}", param_hint="--provider") from e
    provider = getattr(module, attr, None)
    if not callable(provider):
        raise click.BadParameter(f"'{spec}' is not a callable", param_hint="--provider")
    return provider


def render_event(event: BusEvent) -> None:
    if event.kind == EventKind.SYSTEM:
        console.print(f"[bold magenta]system:[/bold magenta] {event.text}")
    elif event.kind == EventKind.ASSISTANT:
        console.print(Panel(event.text, title="assistant", border_style="cyan"))
    elif event.kind == EventKind.USER:
        console.print(f"[bold]you:[/bold] {event.text}")
    else:
        style = LEVEL_STYLES.get(event.level, "dim")
        console.print(f"[{style}]  {event.text}[/{style}]")


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """TaskPilot - run model-driven tasks in ephemeral containers."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
def init() -> None:
    """Initialize project for taskpilot."""
    root = get_project_root()
    config_file = config_path_for(root)
    if config_file.exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return
    write_default_config(root)
    console.print(f"[green]Created {config_file}[/green]")


@main.command()
def images() -> None:
    """List container images and whether this project allows them."""
    try:
        config = load_config(get_project_root())
    except TaskPilotError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    table = Table(title="Container images")
    table.add_column("Image", style="cyan")
    table.add_column("Allowed")
    for image in KNOWN_IMAGES:
        allowed = image in config.allowed_images
        table.add_row(image, "[green]yes[/green]" if allowed else "[dim]no[/dim]")
    console.print(table)


@main.command("run-task")
@click.argument("task")
@click.option("--provider", "-p", required=True, help="Generation provider as module:function")
@click.option("--image", "-i", help="Container image (the model proposes one if omitted)")
@click.option("--working-dir", "-w", default="/workspace", show_default=True, help="Working directory inside the container")
def run_task(task: str, provider: str, image: str | None, working_dir: str) -> None:
    """Run TASK in an ephemeral container."""
    generate = load_provider(provider)
    try:
        config = load_config(get_project_root())
        runtime = build_runtime(config)
    except TaskPilotError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    options: dict = {END_AFTER_TASK_OPTION: True}
    if image:
        options[PROPOSAL_OPTION] = {"image": image, "taskDescription": task, "workingDir": working_dir}

    runtime.bus.subscribe(render_event)
    loop = runtime.dispatch_loop(generate, options=options)
    result: dict = {}

    def run() -> None:
        result["transcript"] = loop.run(
            [Turn(role=Role.USER, text=task)],
            forced_action_type=RUN_CONTAINER_TASK,
        )

    console.print(f"\n[bold]Running task:[/bold] {task}\n")
    worker = threading.Thread(target=run, name="taskpilot-task", daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.2)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelling task...[/yellow]")
        runtime.cancel_token.cancel()
        worker.join()
    finally:
        runtime.close()

    report = _task_report(result.get("transcript", []))
    if report is None:
        console.print(Panel("[red]Task did not report a result[/red]", title="Status"))
        sys.exit(1)
    succeeded = report.startswith("Task finished with status: Success")
    console.print(Panel(report, title="Status", border_style="green" if succeeded else "red"))
    if not succeeded:
        sys.exit(1)


def _task_report(transcript: list[Turn]) -> str | None:
    for turn in reversed(transcript):
        for response in turn.function_responses:
            if response.name == RUN_CONTAINER_TASK:
                return response.content
    return None


@main.group()
def knowledge() -> None:
    """Inspect the cross-task knowledge store."""
    pass


def _open_store() -> KnowledgeStore:
    try:
        config = load_config(get_project_root())
    except TaskPilotError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    return KnowledgeStore(config.knowledge_db_path)


@knowledge.command("list")
@click.option("--prefix", help="Only keys starting with this prefix")
def knowledge_list(prefix: str | None) -> None:
    """List knowledge entries."""
    store = _open_store()
    entries = store.list_entries(prefix)
    if not entries:
        console.print("[dim]No knowledge entries[/dim]")
        return

    table = Table(title="Knowledge")
    table.add_column("Key", style="cyan")
    table.add_column("Tags")
    table.add_column("Updated")
    for entry in entries:
        table.add_row(entry.key, ", ".join(entry.tags or []), entry.timestamp.strftime("%Y-%m-%d %H:%M"))
    console.print(table)


@knowledge.command("get")
@click.argument("key")
def knowledge_get(key: str) -> None:
    """Show one knowledge entry."""
    entry = _open_store().get(key)
    if entry is None:
        console.print(f"[red]Error:[/red] No entry for '{key}'")
        sys.exit(1)
    console.print(Panel(json.dumps(entry.value, indent=2), title=entry.key))


@knowledge.command("delete")
@click.argument("key")
def knowledge_delete(key: str) -> None:
    """Delete one knowledge entry."""
    if _open_store().delete(key):
        console.print(f"[green]Deleted {key}[/green]")
    else:
        console.print(f"[yellow]No entry for '{key}'[/yellow]")


if __name__ == "__main__":
    main()
