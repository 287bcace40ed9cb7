"""
converge - command line interface.

Exit codes:
    0  success
    1  partial apply failure or any other error
    3  validation failure
    4  dependency cycle
    5  state conflict or state locked by another run
"""

import asyncio
import dataclasses
import json
import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import click
import yaml
from tabulate import tabulate

from config import Config, load_config
from differ import Action
from document import Document, load_document
from engine import Engine, open_state_store
from errors import ConflictError, ConvergeError, CycleError, ValidationError
from events import EventBus, EventSubscription, EventType
from executor import ApplyReport, EntryStatus
from expressions import to_raw
from planner import Plan, PlanEntry
from providers.registry import ProviderRegistry, register_builtin_providers

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_VALIDATION = 3
EXIT_CYCLE = 4
EXIT_CONFLICT = 5


def exit_code_for(error: Exception) -> int:
    """Map an engine error to the CLI exit code."""
    if isinstance(error, ValidationError):
        return EXIT_VALIDATION
    if isinstance(error, CycleError):
        return EXIT_CYCLE
    if isinstance(error, ConflictError):
        return EXIT_CONFLICT
    return EXIT_FAILURE


def _fail(error: Exception) -> None:
    click.echo(f"Error: {error}", err=True)
    for detail in getattr(error, "errors", []):
        click.echo(f"  - {detail}", err=True)
    sys.exit(exit_code_for(error))


def _parse_vars(values: Tuple[str, ...]) -> Dict[str, Any]:
    """Parse ``--var key=value`` options; values are read as YAML scalars."""
    variables = {}
    for item in values:
        key, sep, raw = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got '{item}'", param_hint="--var")
        variables[key.strip()] = yaml.safe_load(raw) if raw else ""
    return variables


def _load(filename: str, var: Tuple[str, ...]) -> Document:
    return load_document(filename, variables=_parse_vars(var))


@asynccontextmanager
async def _engine(
    config: Config, event_bus: Optional[EventBus] = None
) -> AsyncIterator[Engine]:
    registry = register_builtin_providers(
        ProviderRegistry(), enabled=config.providers.enabled_providers
    )
    store = await open_state_store(config)
    engine = Engine(store, registry=registry, config=config, event_bus=event_bus)
    try:
        yield engine
    finally:
        await engine.close()


def _run(coro) -> Any:
    try:
        return asyncio.run(coro)
    except ConvergeError as e:
        _fail(e)
    except (OSError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_FAILURE)


# Rendering


_SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.DESTROY: "-",
}


def _entry_symbol(entry: PlanEntry) -> str:
    if entry.replace:
        return "+/-" if entry.create_before_destroy else "-/+"
    return _SYMBOLS[entry.action]


def render_plan(plan: Plan) -> str:
    if plan.is_empty:
        return "No changes. Infrastructure matches the document."

    rows = []
    for entry in plan.entries:
        rows.append(
            [
                _entry_symbol(entry),
                entry.address,
                entry.action.value,
                ", ".join(entry.replace_fields or entry.changed_fields),
            ]
        )
    table = tabulate(rows, headers=["", "Address", "Action", "Fields"], tablefmt="simple")
    s = plan.summary()
    return (
        f"{table}\n\nPlan: {s['create']} to create, {s['update']} to update, "
        f"{s['replace']} to replace, {s['destroy']} to destroy."
    )


def render_report(report: ApplyReport) -> str:
    rows = []
    for result in report.results.values():
        rows.append(
            [
                result.address,
                result.action.value,
                "✓" if result.status == EntryStatus.APPLIED else "✗",
                result.status.value,
                result.attempts,
                f"{result.duration_seconds:.2f}s",
                result.error or "",
            ]
        )
    table = tabulate(
        rows,
        headers=["Address", "Action", "OK", "Status", "Attempts", "Time", "Error"],
        tablefmt="grid",
    )
    counts = report.counts()
    summary = ", ".join(f"{count} {status}" for status, count in counts.items())
    return f"{table}\n\nRun {report.run_id}: {summary}."


async def _follow(subscription: EventSubscription) -> None:
    async for event in subscription:
        if event.event_type == EventType.PENDING:
            continue
        line = f"{event.address}: {event.event_type.value.lower()} ({event.action})"
        if event.message and event.event_type != EventType.APPLIED:
            line += f" - {event.message}"
        click.echo(line)


async def _apply_with_progress(event_bus: EventBus, operation) -> ApplyReport:
    subscriber_id, subscription = await event_bus.subscribe()
    follower = asyncio.create_task(_follow(subscription))
    try:
        return await operation
    finally:
        await event_bus.unsubscribe(subscriber_id)
        await follower


def _finish(report: ApplyReport) -> None:
    click.echo("")
    click.echo(render_report(report))
    if report.conflict:
        click.echo(f"Error: {report.conflict}", err=True)
        sys.exit(EXIT_CONFLICT)
    if not report.success:
        sys.exit(EXIT_FAILURE)


# Commands


document_argument = click.argument("filename", type=click.Path(exists=True, dir_okay=False))
var_option = click.option(
    "--var", multiple=True, metavar="KEY=VALUE", help="Set a document variable"
)


@click.group()
@click.option("--state", "state_path", default=None, help="Path of the local state file")
@click.option(
    "--backend",
    type=click.Choice(["local", "memory", "postgres"]),
    default=None,
    help="State backend (defaults to CONVERGE_STATE_BACKEND)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, state_path, backend, verbose):
    """converge - declarative infrastructure reconciliation"""
    try:
        config = load_config()
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_FAILURE)

    state = config.state
    if state_path:
        state = dataclasses.replace(state, path=state_path)
    if backend:
        state = dataclasses.replace(state, backend=backend)
    ctx.obj = dataclasses.replace(config, state=state)

    logging.basicConfig(
        level=logging.DEBUG if verbose else config.logging.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@cli.command()
@document_argument
@var_option
@click.pass_obj
def validate(config, filename, var):
    """Validate a desired-state document"""

    async def run():
        document = _load(filename, var)
        async with _engine(config) as engine:
            graph = engine.validate(document)
        return document, graph

    document, graph = _run(run())
    click.echo(
        f"Document is valid: {len(document.resources)} resources, "
        f"{sum(1 for _ in graph.edges())} dependencies."
    )


@cli.command()
@document_argument
@var_option
@click.option("--destroy", is_flag=True, help="Plan destroying all resources")
@click.option("--refresh/--no-refresh", default=True, help="Read current objects first")
@click.option("--output", "-o", type=click.Choice(["table", "json"]), default="table")
@click.pass_obj
def plan(config, filename, var, destroy, refresh, output):
    """Show the changes needed to converge state to a document"""

    async def run():
        document = _load(filename, var)
        async with _engine(config) as engine:
            return await engine.plan(document, refresh=refresh, destroy=destroy)

    result = _run(run())
    if output == "json":
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        click.echo(render_plan(result))


@cli.command()
@document_argument
@var_option
@click.option("--auto-approve", is_flag=True, help="Skip interactive approval")
@click.option("--parallelism", type=click.IntRange(min=1), default=None)
@click.option("--refresh/--no-refresh", default=True, help="Read current objects first")
@click.pass_obj
def apply(config, filename, var, auto_approve, parallelism, refresh):
    """Plan and apply a document"""
    if parallelism:
        config = dataclasses.replace(
            config, executor=dataclasses.replace(config.executor, parallelism=parallelism)
        )
    event_bus = EventBus()

    async def run():
        document = _load(filename, var)
        async with _engine(config, event_bus) as engine:
            planned = await engine.plan(document, refresh=refresh)
            click.echo(render_plan(planned))
            if planned.is_empty:
                return None
            if not auto_approve:
                click.confirm("\nApply these changes?", abort=True)
            click.echo("")
            return await _apply_with_progress(
                event_bus, engine.apply(document, plan=planned)
            )

    report = _run(run())
    if report is not None:
        _finish(report)


@cli.command()
@click.argument("filename", required=False, type=click.Path(exists=True, dir_okay=False))
@var_option
@click.option("--auto-approve", is_flag=True, help="Skip interactive approval")
@click.pass_obj
def destroy(config, filename, var, auto_approve):
    """Destroy every resource recorded in state"""
    event_bus = EventBus()

    async def run():
        document = _load(filename, var) if filename else None
        async with _engine(config, event_bus) as engine:
            planned = await engine.plan(document, destroy=True) if document else None
            if planned is not None:
                click.echo(render_plan(planned))
                if planned.is_empty:
                    return None
            elif not await engine.list_state():
                click.echo("No resources in state.")
                return None
            if not auto_approve:
                click.confirm("\nDestroy all resources?", abort=True)
            return await _apply_with_progress(
                event_bus, engine.destroy(document)
            )

    report = _run(run())
    if report is not None:
        _finish(report)


@cli.command()
@document_argument
@var_option
@click.option("--output", "-o", type=click.Choice(["table", "json"]), default="table")
@click.pass_obj
def output(config, filename, var, output):
    """Show the document's outputs"""

    async def run():
        document = _load(filename, var)
        async with _engine(config) as engine:
            return await engine.outputs(document)

    values = to_raw(_run(run()))
    if output == "json":
        click.echo(json.dumps(values, indent=2))
    elif not values:
        click.echo("No outputs defined")
    else:
        rows = [[name, json.dumps(value) if not isinstance(value, str) else value]
                for name, value in values.items()]
        click.echo(tabulate(rows, headers=["Name", "Value"], tablefmt="simple"))


@cli.group()
def state():
    """Inspect and edit recorded state"""
    pass


@state.command("list")
@click.pass_obj
def state_list(config):
    """List recorded resources"""

    async def run():
        async with _engine(config) as engine:
            return await engine.list_state()

    records = _run(run())
    if not records:
        click.echo("No resources in state.")
        return
    rows = [[r.address, r.provider, r.object_id, r.updated_at] for r in records]
    click.echo(
        tabulate(rows, headers=["Address", "Provider", "Object ID", "Updated"], tablefmt="simple")
    )


@state.command("show")
@click.argument("address")
@click.pass_obj
def state_show(config, address):
    """Show the recorded state of one resource"""

    async def run():
        async with _engine(config) as engine:
            return await engine.show_state(address)

    record = _run(run())
    if record is None:
        click.echo(f"No state for {address}", err=True)
        sys.exit(EXIT_FAILURE)
    click.echo(yaml.safe_dump(record.to_dict(), default_flow_style=False, sort_keys=False))


@state.command("rm")
@click.argument("address")
@click.pass_obj
def state_rm(config, address):
    """Forget a resource without destroying it"""

    async def run():
        async with _engine(config) as engine:
            return await engine.remove_state(address)

    if not _run(run()):
        click.echo(f"No state for {address}", err=True)
        sys.exit(EXIT_FAILURE)
    click.echo(f"Removed {address} from state")


@cli.command()
@click.option("--address", default=None, help="Only show entries for this resource")
@click.option("--limit", default=20, type=click.IntRange(min=1), help="Number of entries")
@click.pass_obj
def history(config, address, limit):
    """Show apply history"""

    async def run():
        async with _engine(config) as engine:
            return await engine.history(address=address, limit=limit)

    entries: List[Dict[str, Any]] = _run(run())
    if not entries:
        click.echo("No apply history")
        return

    headers = ["Run", "Address", "Action", "Success", "Status", "Attempts", "Time", "Recorded"]
    rows = []
    for entry in entries:
        rows.append(
            [
                entry["run_id"][:8],
                entry["address"],
                entry["action"],
                "✓" if entry["status"] == EntryStatus.APPLIED.value else "✗",
                entry["status"],
                entry["attempts"],
                f"{entry['duration_seconds']}s",
                entry["recorded_at"],
            ]
        )
    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


if __name__ == "__main__":
    cli()
