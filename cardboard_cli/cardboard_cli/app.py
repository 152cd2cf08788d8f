"""Cardboard CLI application -- Typer-based operator interface.

Runs the quota maintenance jobs directly against the database and
inspects tenant usage.  Human-readable output goes to *stderr* via Rich;
``--json`` writes machine-readable results to *stdout*.
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import typer
from cardboard_core.config import load_settings
from rich.console import Console
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardboard_cli.display import (
    display_account_usage,
    display_reconcile_result,
    display_reconcile_summary,
    display_tier_limits,
)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="cardboard",
    help="Cardboard - quota maintenance and usage inspection",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Set once per invocation by _global_options.
_json_output: bool = False
_database_url: str | None = None


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="Database URL; defaults to CARDBOARD_DATABASE_URL.",
    ),
) -> None:
    """Cardboard operator tools: counters, reservations, limits and tokens."""
    global _json_output, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(data: Any) -> None:
    sys.stdout.write(json.dumps(data, indent=2, default=str) + "\n")


def _run_with_db(fn: Callable[[async_sessionmaker[AsyncSession]], Awaitable[T]]) -> T:
    """Open an engine for the configured database, run *fn*, dispose the engine."""
    from cardboard_core.state.database import get_engine, get_session_factory

    settings = load_settings()
    url = _database_url or settings.database_url

    async def _main() -> T:
        engine = get_engine(url, pool_size=2, max_overflow=0)
        try:
            return await fn(get_session_factory(engine))
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_main())
    except typer.Exit:
        raise
    except Exception as exc:
        console.print(f"[red]Database operation failed: {exc}[/red]")
        raise typer.Exit(code=3) from exc


# ---------------------------------------------------------------------------
# reconcile
# ---------------------------------------------------------------------------


@app.command()
def reconcile(
    tenant: str | None = typer.Option(None, "--tenant", help="Reconcile only this tenant."),
    max_age: int | None = typer.Option(
        None,
        "--max-age",
        help="Reconcile accounts not reconciled within this many seconds.",
    ),
    batch_size: int | None = typer.Option(None, "--batch-size", help="Maximum accounts per run."),
) -> None:
    """Recount boards, cards and storage and overwrite drifted counters."""
    from cardboard_core.billing.counters import AtomicCounterService
    from cardboard_core.billing.maintenance import reconcile_stale_accounts

    settings = load_settings()

    if tenant is not None:

        async def _one(factory: async_sessionmaker[AsyncSession]) -> Any:
            return await AtomicCounterService(factory).reconcile(tenant)

        result = _run_with_db(_one)
        if result is None:
            console.print(f"[red]No account for tenant '{tenant}'.[/red]")
            raise typer.Exit(code=1)
        if _json_output:
            _emit_json(
                {
                    "tenant_id": result.tenant_id,
                    "before": result.before.to_dict(),
                    "after": result.after.to_dict(),
                    "drifted": result.drifted,
                    "storage_flagged": result.storage_flagged,
                }
            )
        else:
            display_reconcile_result(console, result)
        return

    async def _batch(factory: async_sessionmaker[AsyncSession]) -> Any:
        return await reconcile_stale_accounts(
            factory,
            AtomicCounterService(factory),
            max_age_seconds=max_age if max_age is not None else settings.reconcile_max_age_seconds,
            batch_size=batch_size or settings.reconcile_batch_size,
        )

    summary = _run_with_db(_batch)
    if _json_output:
        _emit_json(summary.to_dict())
    else:
        display_reconcile_summary(console, summary)
    if summary.failed:
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# cleanup-reservations
# ---------------------------------------------------------------------------


@app.command(name="cleanup-reservations")
def cleanup_reservations(
    max_age: int | None = typer.Option(
        None,
        "--max-age",
        help="Zero pending storage on accounts whose last reservation is older than this many seconds.",
    ),
) -> None:
    """Release storage held by abandoned upload reservations."""
    from cardboard_core.billing.maintenance import cleanup_stale_reservations
    from cardboard_core.billing.reservation import StorageReservationService

    settings = load_settings()
    age = max_age if max_age is not None else settings.reservation_cleanup_max_age_seconds

    async def _cleanup(factory: async_sessionmaker[AsyncSession]) -> int:
        return await cleanup_stale_reservations(StorageReservationService(factory), max_age_seconds=age)

    cleaned = _run_with_db(_cleanup)
    if _json_output:
        _emit_json({"cleaned": cleaned})
    else:
        console.print(f"[green]Cleaned stale reservations on {cleaned} account(s).[/green]")


# ---------------------------------------------------------------------------
# usage
# ---------------------------------------------------------------------------


@app.command()
def usage(tenant: str = typer.Argument(..., help="Tenant (user) id.")) -> None:
    """Show a tenant's stored counters next to a live recount."""
    from cardboard_core.billing.entitlement import calculate_live_usage
    from cardboard_core.state.repository import AccountRepository

    async def _load(factory: async_sessionmaker[AsyncSession]) -> Any:
        async with factory() as session:
            account = await AccountRepository(session).get(tenant)
            if account is None:
                return None
            return account, await calculate_live_usage(session, tenant)

    found = _run_with_db(_load)
    if found is None:
        console.print(f"[red]No account for tenant '{tenant}'.[/red]")
        raise typer.Exit(code=1)

    account, live = found
    if _json_output:
        _emit_json(
            {
                "tenant_id": account.tenant_id,
                "tier": account.subscription_tier,
                "stored": {
                    "boards": account.board_count,
                    "cards": account.card_count,
                    "confirmed_storage_bytes": account.confirmed_storage_bytes,
                    "pending_storage_bytes": account.pending_storage_bytes,
                },
                "live": live.to_dict(),
            }
        )
    else:
        display_account_usage(console, account, live)


# ---------------------------------------------------------------------------
# limits
# ---------------------------------------------------------------------------


@app.command()
def limits() -> None:
    """Print the per-tier limits."""
    from cardboard_core.billing.limits import Tier, limits_payload

    if _json_output:
        _emit_json({tier.value: limits_payload(tier) for tier in Tier})
    else:
        display_tier_limits(console)


# ---------------------------------------------------------------------------
# token
# ---------------------------------------------------------------------------


@app.command()
def token(
    tenant: str = typer.Argument(..., help="Tenant (user) id to put in the token subject."),
    email: str | None = typer.Option(None, "--email", help="Email claim."),
    ttl: int = typer.Option(3600, "--ttl", help="Lifetime in seconds."),
    secret: str = typer.Option(..., "--secret", envvar="API_JWT_SECRET", help="API token signing secret."),
) -> None:
    """Mint a bearer token for local development."""
    from cardboard_api.security import TokenManager

    try:
        issued = TokenManager(secret).generate_token(tenant, email=email, ttl_seconds=ttl)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=3) from exc
    sys.stdout.write(issued + "\n")


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind."),
    port: int = typer.Option(8000, "--port", help="Port to listen on."),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes."),
) -> None:
    """Run the Cardboard API under uvicorn.

    ``--database-url`` is forwarded as ``API_DATABASE_URL`` so that a local
    SQLite file can be served without any other configuration.
    """
    import uvicorn

    if _database_url:
        os.environ["API_DATABASE_URL"] = _database_url

    config = uvicorn.Config(
        "cardboard_api.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
        access_log=False,
    )
    server = uvicorn.Server(config)

    console.print(f"[green]✓[/green] API server starting on http://{host}:{port}")
    console.print(f"[green]✓[/green] OpenAPI docs at http://{host}:{port}/docs")
    try:
        server.run()
    except KeyboardInterrupt:
        console.print("[yellow]Server stopped.[/yellow]")
    except Exception as exc:
        console.print(f"[red]API server stopped: {exc}[/red]")
        raise typer.Exit(code=3) from exc
