import signal
import threading

import typer

from genbroker.app.core.config import settings
from genbroker.app.core.logging import setup_logging
from genbroker.app.services.runtime import Runtime, build_runtime

app = typer.Typer(help="Run the generation broker and administer credits and jobs.")


def _runtime() -> Runtime:
    setup_logging()
    return build_runtime()


@app.command("worker")
def worker(
    scheduler: bool = typer.Option(
        True,
        "--scheduler/--no-scheduler",
        help="Also run the reservation sweep, stale-job check and retention purge.",
    ),
) -> None:
    """Process queued generations until interrupted."""
    runtime = _runtime()
    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    signal.signal(signal.SIGINT, lambda *_: stop.set())

    runtime.start(with_scheduler=scheduler)
    typer.echo("Worker running. Press Ctrl+C to stop.")
    try:
        stop.wait()
    finally:
        runtime.stop()
        runtime.db.dispose()


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind."),
    port: int = typer.Option(8000, "--port", min=1, max=65535, help="Port to bind."),
    workers: bool = typer.Option(
        True,
        "--workers/--no-workers",
        help="Run queue workers inside the API process.",
    ),
) -> None:
    """Serve the internal HTTP API with uvicorn."""
    import uvicorn

    settings.api_run_workers = workers
    uvicorn.run("genbroker.main:app", host=host, port=port, log_config=None)


@app.command("account")
def account(
    user_id: str = typer.Argument(..., help="Discord user id."),
    initial_grant: int | None = typer.Option(None, "--grant", min=0, help="Signup grant (default from settings)."),
) -> None:
    """Open a credit account with the signup grant."""
    runtime = _runtime()
    created = runtime.ledger.ensure_account(user_id, initial_grant=initial_grant)
    typer.echo(f"Account {'created' if created else 'already exists'} for {user_id}")


@app.command("grant")
def grant(
    user_id: str = typer.Argument(..., help="Discord user id."),
    amount: int = typer.Argument(..., min=1, help="Credits to add."),
    description: str = typer.Option("Admin grant", "--description", "-d"),
) -> None:
    """Add credits to a user's balance."""
    runtime = _runtime()
    available = runtime.ledger.grant(user_id, amount, description)
    typer.echo(f"Granted {amount} credits to {user_id}. Available: {available}")


@app.command("refill")
def refill(
    user_id: str = typer.Argument(..., help="Discord user id."),
    amount: int | None = typer.Option(None, "--amount", min=1, help="Refill amount (default from settings)."),
    period: str | None = typer.Option(None, "--period", help="YYYY-MM period (default: current month)."),
) -> None:
    """Apply the monthly refill once per period."""
    runtime = _runtime()
    if runtime.ledger.monthly_refill(user_id, amount, period=period):
        typer.echo(f"Refilled {user_id}")
    else:
        typer.echo(f"{user_id} was already refilled this period (or has no account)")


@app.command("balance")
def balance(
    user_id: str = typer.Argument(..., help="Discord user id."),
    check: bool = typer.Option(False, "--check", help="Also validate the balance against reservations."),
) -> None:
    """Show a user's balance."""
    runtime = _runtime()
    account = runtime.ledger.get_balance(user_id)
    if account is None:
        typer.echo(f"No credit account for {user_id}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"User: {account.user_id}")
    typer.echo(f"Available: {account.available}")
    typer.echo(f"Reserved: {account.reserved}")
    typer.echo(f"Total: {account.total}")
    typer.echo(f"Consumed: {account.consumed}")
    for reservation in account.active_reservations:
        typer.echo(f"  {reservation.id} {reservation.reserved_amount} credits (job {reservation.job_id})")

    if check:
        result = runtime.ledger.validate_balance(user_id)
        if result.is_valid:
            typer.echo("Balance OK")
        else:
            for issue in result.issues:
                typer.echo(f"Issue: {issue}", err=True)
            raise typer.Exit(code=2)


@app.command("sweep")
def sweep() -> None:
    """Release expired reservations and fail the jobs that held them."""
    runtime = _runtime()
    result = runtime.orchestrator.sweep_expired_reservations()
    typer.echo(
        f"Released {result.released} reservations ({result.credits_released} credits); "
        f"failed {len(result.failed_jobs)} jobs"
    )


@app.command("stale")
def stale(
    minutes: int | None = typer.Option(None, "--minutes", min=1, help="Age threshold (default from settings)."),
) -> None:
    """List pending/processing jobs older than the threshold."""
    runtime = _runtime()
    jobs = runtime.orchestrator.find_stale_jobs(minutes)
    if not jobs:
        typer.echo("No stale jobs")
        return
    for job in jobs:
        typer.echo(f"{job.id} {job.status} user={job.user_id} created_at={job.created_at}")


@app.command("purge")
def purge(
    days: int | None = typer.Option(None, "--days", min=1, help="Retention in days (default from settings)."),
) -> None:
    """Delete finished jobs older than the retention period."""
    runtime = _runtime()
    deleted = runtime.orchestrator.purge_old_jobs(days)
    typer.echo(f"Deleted {deleted} jobs")


@app.command("stats")
def stats(
    days: int = typer.Option(30, "--days", min=1, help="Look-back window."),
) -> None:
    """Show job statistics."""
    runtime = _runtime()
    result = runtime.jobs.get_stats(days)
    typer.echo(f"Jobs in the last {result.days} days: {result.total}")
    for status, count in sorted(result.by_status.items()):
        typer.echo(f"  {status}: {count}")
    typer.echo(f"Success rate: {result.success_rate:.1%}")
    if result.average_execution_seconds is not None:
        typer.echo(f"Average execution: {result.average_execution_seconds:.1f}s")
    typer.echo(f"Credits used: {result.credits_used}")


def main() -> None:
    """Entry point for `python -m genbroker.cli`."""
    app()  # pragma: no cover


if __name__ == "__main__":
    main()  # pragma: no cover
