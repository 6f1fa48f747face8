"""
FlashPush CLI - Command line interface for operators.

Usage:
    flashpush --help                            Show all commands
    flashpush send OFFER_ID --token JWT         Push an offer once
    flashpush send OFFER_ID --token JWT -n      Dry run: resolve audience and batch plan only
    flashpush purge-rate-limits                 Delete expired rate limit counters
    flashpush serve                             Start the API server
"""

import asyncio
import json

import typer

app = typer.Typer(
    name="flashpush",
    help="FlashPush CLI - flash offer push delivery",
    no_args_is_help=True,
)


# --- Printer helpers ---


def _print_success(message: str) -> None:
    """Print a success message."""
    typer.echo(f"  ✅ {message}")


def _print_error(message: str) -> None:
    """Print an error message to stderr."""
    typer.echo(f"❌ {message}", err=True)


@app.command()
def send(
    offer_id: str = typer.Argument(..., help="Flash offer UUID"),
    token: str = typer.Option(..., "--token", "-t", envvar="FLASHPUSH_TOKEN", help="Caller JWT"),
    dry_run: bool = typer.Option(False, "--dry-run", "-n", help="Resolve audience without sending"),
):
    """Push a flash offer to its audience and print the JSON result."""
    from flashpush.core.database import AsyncSessionLocal
    from flashpush.core.errors import FlashPushError
    from flashpush.core.logging import setup_logging
    from flashpush.core.security import sanitize_object
    from flashpush.services.orchestrator import FlashOfferPushService

    setup_logging()

    async def run() -> dict:
        async with AsyncSessionLocal() as db:
            service = FlashOfferPushService(db)
            try:
                result = await service.run(offer_id, token, dry_run=dry_run)
            except FlashPushError as e:
                return e.to_dict()
            return result.to_dict()

    body = sanitize_object(asyncio.run(run()))
    typer.echo(json.dumps(body, indent=2))

    if not body.get("success"):
        raise typer.Exit(1)


@app.command()
def purge_rate_limits():
    """Delete expired rate limit counters."""
    from flashpush.core.database import AsyncSessionLocal
    from flashpush.core.logging import setup_logging
    from flashpush.services.rate_limit import purge_expired_counters

    setup_logging()

    async def run() -> int:
        async with AsyncSessionLocal() as db:
            deleted = await purge_expired_counters(db)
            await db.commit()
            return deleted

    try:
        deleted = asyncio.run(run())
    except Exception as e:
        _print_error(f"Purge failed: {e}")
        raise typer.Exit(1) from e

    _print_success(f"Deleted {deleted} expired counters")


@app.command()
def migrate():
    """Run database migrations (alembic upgrade head)."""
    import subprocess

    result = subprocess.run(["alembic", "upgrade", "head"], check=False)
    raise typer.Exit(result.returncode)


@app.command()
def serve(
    reload: bool = typer.Option(False, "--reload", "-r", help="Enable hot reload"),
    port: int = typer.Option(8000, "--port", "-p", help="Port to run on"),
):
    """Start the API server."""
    import subprocess

    cmd = ["uvicorn", "flashpush.main:app", "--host", "0.0.0.0", "--port", str(port)]
    if reload:
        cmd.append("--reload")

    subprocess.run(cmd, check=False)


if __name__ == "__main__":
    app()
