"""Main CLI application"""

import asyncio
import json
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from esign_workflow.cli.init_cmd import init_command
from esign_workflow.errors import WorkflowError
from esign_workflow.utils.logging import configure_logging

app = typer.Typer(
    name="esign-workflow",
    help="Contract e-signature workflow with audit trail and evidence",
    add_completion=False,
)

console = Console(force_terminal=True)


def _engine():
    from esign_workflow.engine import WorkflowEngine

    engine = WorkflowEngine()
    engine.init_db()
    return engine


def _run(engine, coro):
    """Run one async operation and flush the audit entries it emitted."""
    async def runner():
        try:
            return await coro
        finally:
            await engine.outbox.drain()

    return asyncio.run(runner())


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")):
    configure_logging("DEBUG" if verbose else None)


@app.command("init")
def init():
    """Initialize database and document storage"""
    init_command()


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port"),
):
    """Run the HTTP API (and the background worker if enabled)"""
    import uvicorn
    from esign_workflow.api.app import create_app

    uvicorn.run(create_app(), host=host, port=port)


@app.command("worker")
def worker():
    """Run the job poll and reminder sweep until interrupted"""
    from esign_workflow.services.worker import WorkflowWorker

    engine = _engine()
    bg = WorkflowWorker(engine)

    async def run_forever():
        await bg.start()
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await bg.stop()

    console.print("[blue]Worker running, press Ctrl+C to stop[/blue]")
    try:
        asyncio.run(run_forever())
    except KeyboardInterrupt:
        console.print("\n[yellow]Worker stopped[/yellow]")


@app.command("poll")
def poll(batch: Optional[int] = typer.Option(None, "--batch", "-b", help="Jobs to claim")):
    """Process one batch of pending document jobs"""
    engine = _engine()
    processed = _run(engine, engine.jobs.poll_and_process(batch))
    if not processed:
        console.print("[dim]No jobs ready[/dim]")
        return
    for job in processed:
        color = {"completed": "green", "error": "red"}.get(job.status.value, "yellow")
        console.print(f"  [{color}]{job.status.value:10}[/{color}] {job.id[:8]} contract={job.contract_id[:8]} attempts={job.attempts}")


@app.command("sweep")
def sweep():
    """Send due reminders"""
    engine = _engine()
    result = _run(engine, engine.notifications.sweep())
    console.print(
        f"[green][OK][/green] due={result.due} sent={result.sent} "
        f"cancelled={result.cancelled} failed={result.failed}"
    )


@app.command("jobs")
def jobs(
    status: Optional[str] = typer.Option(None, "--status", "-s", help="pending, processing, completed, error"),
    limit: int = typer.Option(20, "--limit", "-l"),
):
    """List document jobs"""
    from esign_workflow.models.job import JobStatus

    engine = _engine()
    try:
        job_status = JobStatus(status) if status else None
    except ValueError:
        console.print(f"[red]Unknown status '{status}'[/red]")
        raise typer.Exit(1)

    job_list = engine.jobs.list_jobs(job_status, limit)
    if not job_list:
        console.print("[yellow]No jobs found[/yellow]")
        return

    table = Table(title="Document Jobs")
    table.add_column("Job", style="cyan")
    table.add_column("Contract")
    table.add_column("Status", style="green")
    table.add_column("Attempts", justify="right")
    table.add_column("Error")
    for job in job_list:
        table.add_row(
            job.id[:8],
            job.contract_id[:8],
            job.status.value,
            f"{job.attempts}/{job.max_attempts}",
            (job.error_message or "")[:40],
        )
    console.print(table)


@app.command("reprocess")
def reprocess(job_id: str = typer.Argument(..., help="Job id")):
    """Reset a job so the next poll retries it"""
    engine = _engine()
    try:
        job = engine.jobs.reprocess(job_id)
        asyncio.run(engine.outbox.drain())
    except WorkflowError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green][OK][/green] Job {job.id[:8]} is {job.status.value}")


@app.command("remind")
def remind(contract_id: str = typer.Argument(..., help="Contract id")):
    """Send a reminder to the external signer now"""
    engine = _engine()
    try:
        result = _run(engine, engine.notifications.send_manual_reminder(contract_id))
    except WorkflowError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    if result.success:
        console.print("[green][OK] Reminder sent[/green]")
    else:
        console.print(f"[red][FAIL] {result.error}[/red]")


@app.command("reissue-token")
def reissue_token(contract_id: str = typer.Argument(..., help="Contract id")):
    """Issue a fresh verification code and email it"""
    engine = _engine()
    try:
        _run(engine, engine.contracts.reissue_token(contract_id))
    except WorkflowError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    contract = engine.contracts.get_contract(contract_id)
    console.print(f"[green][OK] New code sent to {contract.external_signer_email}[/green]")


@app.command("report")
def report(
    contract_id: str = typer.Argument(..., help="Contract id"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
    certificate: bool = typer.Option(False, "--certificate", "-c", help="Also issue a validation certificate"),
):
    """Show the audit and compliance report for a contract"""
    engine = _engine()
    try:
        result = _run(engine, engine.evidence.build_report(contract_id))
    except WorkflowError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    if json_output:
        print(json.dumps(result.model_dump(mode="json"), ensure_ascii=False, indent=2))
        return

    console.print(Panel(
        engine.evidence.render_report_text(result),
        title=f"Audit report: {result.contract_title}",
        border_style="green" if result.legally_valid else "yellow",
    ))

    if certificate:
        cert = _run(engine, engine.evidence.issue_certificate(contract_id))
        console.print(
            f"[bold]{cert.certificate_number}[/bold] "
            f"conformance {cert.conformance_percent}% valid until {cert.valid_until:%Y-%m-%d}"
        )


@app.command("status")
def status():
    """Show row counts per table"""
    from esign_workflow.db.supabase import get_database
    from esign_workflow.utils.config import get_settings

    settings = get_settings()
    counts = get_database(settings.db_mode).get_status()

    table = Table(title=f"Database ({settings.db_mode})")
    table.add_column("Table", style="cyan")
    table.add_column("Rows", justify="right")
    for name, count in counts.items():
        table.add_row(name, str(count))
    console.print(table)


if __name__ == "__main__":
    app()
