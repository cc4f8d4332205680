"""Command line interface for workers and compliance operations."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import typer

from datachoreo import Core, load_config
from datachoreo.errors import ChainIntegrityError, DatachoreoError, NotFoundError

app = typer.Typer(help="CLI for the DataChoreography execution core")

# Command groups
worker_app = typer.Typer(help="Commands for running workers")
compliance_app = typer.Typer(help="Commands for the compliance event chain")
run_app = typer.Typer(help="Commands for inspecting runs")

app.add_typer(worker_app, name="worker")
app.add_typer(compliance_app, name="compliance")
app.add_typer(run_app, name="run")

_state: dict[str, Any] = {}


@app.callback()
def main(
    config: Optional[Path] = typer.Option(None, help="Path to a YAML config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
) -> None:
    """DataChoreography CLI entry point."""
    loaded = load_config(str(config) if config else None)
    logging.basicConfig(
        level=logging.DEBUG if verbose else loaded.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _state["config"] = loaded


def _core(worker_id: Optional[str] = None) -> Core:
    return Core(config=_state.get("config"), worker_id=worker_id)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


@worker_app.command("run")
def worker_run(
    worker_id: Optional[str] = typer.Option(None, help="Identifier used as the lock holder"),
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
) -> None:
    """
    Run a polling worker.

    The worker claims pending runs, advances each by one step per pass and
    periodically sweeps expired locks, overdue approvals and expired
    idempotency records.

    Example:
        datachoreo worker run --worker-id worker-1 --lifespan 300
    """
    core = _core(worker_id)

    async def _run() -> None:
        try:
            await core.worker().run(lifespan=lifespan)
        finally:
            await core.close()

    typer.echo(f"Starting worker: {core.executor.worker_id}")
    asyncio.run(_run())


@worker_app.command("sweep")
def worker_sweep() -> None:
    """Run the housekeeping sweep once and print what it cleared."""
    core = _core()

    async def _sweep():
        try:
            return await core.worker().sweep()
        finally:
            await core.close()

    report = asyncio.run(_sweep())
    typer.echo(
        f"Locks cleared: {report.locks_cleared}\t"
        f"Approvals expired: {report.approvals_expired}\t"
        f"Idempotency purged: {report.idempotency_purged}"
    )


@compliance_app.command("verify")
def compliance_verify(
    tenant_id: str,
    start: Optional[datetime] = typer.Option(None, help="Only verify events at or after (UTC)"),
    end: Optional[datetime] = typer.Option(None, help="Only verify events at or before (UTC)"),
) -> None:
    """
    Verify a tenant's hash chain.

    Exits with code 2 when any violation is found.

    Example:
        datachoreo compliance verify tenant-a
        # Output: Chain valid for tenant-a: 42 events
    """
    core = _core()

    async def _verify():
        try:
            return await core.verify_chain(tenant_id, _utc(start), _utc(end))
        finally:
            await core.close()

    result = asyncio.run(_verify())
    if result.valid:
        typer.echo(f"Chain valid for {tenant_id}: {result.event_count} events")
        return
    typer.secho(
        f"Chain INVALID for {tenant_id}: {len(result.violations)} violation(s)",
        fg=typer.colors.RED,
    )
    for violation in result.violations:
        typer.echo(f"- {violation.type} at sequence {violation.sequence} (event {violation.event_id})")
    raise typer.Exit(code=2)


@compliance_app.command("anchor")
def compliance_anchor(tenant_id: str, period: str) -> None:
    """Compute (or re-check) the Merkle anchor for a UTC day ``YYYY-MM-DD``."""
    core = _core()

    async def _anchor():
        try:
            return await core.compute_anchor(tenant_id, period)
        finally:
            await core.close()

    try:
        anchor = asyncio.run(_anchor())
    except ChainIntegrityError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=2)
    except DatachoreoError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if anchor is None:
        typer.echo(f"No events for {tenant_id} on {period}")
        return
    typer.echo(
        f"Anchor {anchor.period}: {anchor.event_count} events "
        f"[{anchor.first_sequence}..{anchor.last_sequence}] root={anchor.merkle_root}"
    )


@compliance_app.command("export")
def compliance_export(
    tenant_id: str,
    output: Optional[Path] = typer.Option(None, help="Write JSON here instead of stdout"),
) -> None:
    """Export a tenant's events, anchors and a fresh verification as JSON."""
    core = _core()

    async def _export():
        try:
            return await core.chain.export(tenant_id)
        finally:
            await core.close()

    data = asyncio.run(_export())
    if output is None:
        _echo_json(data)
        return
    output.write_text(json.dumps(data, indent=2, sort_keys=True))
    typer.echo(f"Exported {len(data['events'])} events to {output}")


@run_app.command("show")
def run_show(tenant_id: str, run_id: str) -> None:
    """
    Show a run's status, step pointer and context.

    Example:
        datachoreo run show tenant-a 0b7c...
        # Output: Run 0b7c...: awaiting_approval (step 1)
    """
    core = _core()

    async def _show():
        try:
            return await core.get_run(tenant_id, run_id)
        finally:
            await core.close()

    try:
        run = asyncio.run(_show())
    except NotFoundError:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.id}: {run.status.value} (step {run.current_step_order})")
    typer.echo(f"Correlation: {run.correlation_id}")
    if run.error_message:
        typer.echo(f"Error: {run.error_message}")
    if run.context:
        typer.echo(f"Context: {json.dumps(run.context, sort_keys=True, default=str)}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
