"""
cacheguard demo - distributed locks, stampede prevention and rate limiting

Runs the library's components against an in-memory store or a Valkey
server and prints what happened:

- stampede:  N concurrent reads of one cold key against a slow loader
- lock:      acquire / contend / release / re-acquire, then an auto-renewed lease
- ratelimit: a burst of requests through the fixed and sliding window limiters

Defaults come from CACHEGUARD_* environment variables (or .env); command
line options override them.
"""

import asyncio
import dataclasses
import time
from collections import Counter
from typing import Optional, Tuple

import typer
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from .cache import CacheManager, InMemoryStore, KeyValueStore, ValkeyClient, ValkeyStore
from .exceptions import CacheContendedError, CacheGuardError, CircuitOpenError, UnknownKeyError
from .services import (
    DistributedLockManager,
    FixedWindowRateLimiter,
    SlidingWindowRateLimiter,
    StampedeGuardedCache,
)
from .utils import GuardSettings, configure_logging, load_settings

app = typer.Typer(help="Distributed lock and stampede prevention demo")
console = Console()


def load_demo_settings(**overrides) -> GuardSettings:
    """
    Load CACHEGUARD_* settings and apply command line overrides.

    Options left unset on the command line arrive as None and are ignored.
    """
    try:
        settings = load_settings()
        updates = {name: value for name, value in overrides.items() if value is not None}
        if updates:
            settings = GuardSettings(**{**settings.model_dump(), **updates})
    except ValueError as e:
        console.print(f"[red]❌ Invalid configuration: {escape(str(e))}[/red]")
        raise typer.Exit(code=1)
    return settings


async def open_store(settings: GuardSettings) -> KeyValueStore:
    """Create the store selected in the settings."""
    if settings.backend == "memory":
        # a small latency lets concurrent callers interleave like real network calls
        return InMemoryStore(latency_seconds=0.001)
    client = ValkeyClient(settings.valkey_config())
    await client.connect()
    return ValkeyStore(client)


def print_section(title: str):
    """Print a section header."""
    console.print(Panel(f"[bold cyan]{title}[/bold cyan]", box=box.DOUBLE))


async def run_stampede(
    settings: GuardSettings,
    requests: int,
    loader_delay_ms: int
) -> Tuple[int, Counter, float]:
    store = await open_store(settings)
    try:
        lock_manager = DistributedLockManager(store, settings.lock_settings())
        cache = CacheManager(store)
        # the population lock has to outlive one slow load plus the retries queued behind it
        stampede_settings = dataclasses.replace(
            settings.stampede_settings(),
            lock_lease_seconds=max(settings.population_lock_lease_seconds, loader_delay_ms / 1000 * 4),
            max_attempts=max(settings.population_max_attempts, int(loader_delay_ms / 20) * 3),
        )
        guard = StampedeGuardedCache(
            cache,
            lock_manager,
            stampede_settings,
            bloom_filter=settings.bloom_filter(store),
            circuit_breaker=settings.circuit_breaker(),
        )
        key = f"demo:stampede:{int(time.time() * 1000)}"
        if guard.bloom_filter is not None:
            await guard.register(key)
        loader_calls = 0

        async def slow_loader():
            nonlocal loader_calls
            loader_calls += 1
            await asyncio.sleep(loader_delay_ms / 1000)
            return {"computed_at": time.time(), "call": loader_calls}

        async def one_request():
            try:
                _, outcome = await guard.get_with_outcome(key, slow_loader)
                return outcome.value
            except CacheContendedError:
                return "contended"
            except (CircuitOpenError, UnknownKeyError) as e:
                return type(e).__name__

        started = time.perf_counter()
        outcomes = Counter(await asyncio.gather(*(one_request() for _ in range(requests))))
        elapsed = time.perf_counter() - started

        await guard.invalidate(key)
        return loader_calls, outcomes, elapsed
    finally:
        await store.close()


@app.command()
def stampede(
    requests: int = typer.Option(50, "--requests", "-r", min=1, max=10000, help="Concurrent reads of one cold key"),
    loader_delay_ms: int = typer.Option(50, "--loader-delay", "-d", min=1, help="Simulated recompute time in ms"),
    coalesce: Optional[bool] = typer.Option(None, "--coalesce/--no-coalesce", help="Share in-process loads per key"),
    policy: Optional[str] = typer.Option(None, "--policy", "-p", help="Contention policy: fail or wait"),
    backend: Optional[str] = typer.Option(None, "--backend", "-b", help="Store backend: memory or valkey"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
):
    """Fire concurrent reads at a cold key and count loader calls"""
    settings = load_demo_settings(backend=backend, contention_policy=policy, coalesce_local=coalesce)
    configure_logging("DEBUG" if verbose else settings.log_level, rich_output=True, console=console)
    print_section("CACHE STAMPEDE")
    console.print(
        f"backend={settings.backend} policy={settings.contention_policy.value} "
        f"coalesce={str(settings.coalesce_local).lower()}"
    )

    try:
        loader_calls, outcomes, elapsed = asyncio.run(run_stampede(settings, requests, loader_delay_ms))
    except CacheGuardError as e:
        console.print(f"[red]❌ Demo failed: {escape(str(e))}[/red]")
        raise typer.Exit(code=1)

    table = Table(title="Outcomes", box=box.ROUNDED)
    table.add_column("Outcome", style="cyan")
    table.add_column("Requests", justify="right", style="magenta")
    for outcome, count in sorted(outcomes.items()):
        table.add_row(outcome, str(count))
    console.print(table)

    style = "green" if loader_calls <= 1 else "yellow"
    console.print(
        f"[{style}]Loader calls: {loader_calls} for {requests} requests[/{style}] "
        f"in {elapsed * 1000:.1f}ms"
    )


async def run_lock_walkthrough(settings: GuardSettings, lease_seconds: float, hold_seconds: float):
    store = await open_store(settings)
    steps = []
    try:
        manager = DistributedLockManager(store, settings.lock_settings())
        resource = "order:42"

        first = await manager.acquire(resource, 10)
        steps.append(("caller A acquires order:42", first is not None))
        second = await manager.acquire(resource, 10)
        steps.append(("caller B acquires order:42", second is not None))
        steps.append(("caller B releases with a foreign token",
                      await manager.release(resource, token="not-the-holder")))
        steps.append(("caller A releases", await manager.release(first)))
        steps.append(("caller A releases again", await manager.release(first)))
        third = await manager.acquire(resource, 10)
        steps.append(("caller C acquires order:42", third is not None))
        await manager.release(third)

        async with await manager.acquire_with_auto_renew("report:nightly", lease_seconds) as lease:
            await asyncio.sleep(hold_seconds)
            status = await manager.get_lock_status("report:nightly", lease.token)
            steps.append((f"lease of {lease_seconds}s still held after {hold_seconds}s", status.owned_by_caller))
            steps.append((f"renewals performed: {lease.renewal_count}", lease.renewal_count > 0))
        return steps
    finally:
        await store.close()


@app.command()
def lock(
    lease: float = typer.Option(0.3, "--lease", "-l", min=0.05, help="Auto-renewed lease in seconds"),
    hold: float = typer.Option(1.0, "--hold", help="How long to hold the auto-renewed lease"),
    backend: Optional[str] = typer.Option(None, "--backend", "-b", help="Store backend: memory or valkey"),
):
    """Walk through acquire, contention, token-checked release and renewal"""
    settings = load_demo_settings(backend=backend)
    configure_logging(settings.log_level, rich_output=True, console=console)
    print_section("DISTRIBUTED LOCK")

    try:
        steps = asyncio.run(run_lock_walkthrough(settings, lease, hold))
    except CacheGuardError as e:
        console.print(f"[red]❌ Demo failed: {escape(str(e))}[/red]")
        raise typer.Exit(code=1)

    table = Table(box=box.ROUNDED)
    table.add_column("Step", style="cyan")
    table.add_column("Result", justify="center")
    for description, ok in steps:
        table.add_row(description, "[green]ok=true[/green]" if ok else "[red]ok=false[/red]")
    console.print(table)


async def run_rate_limit(settings: GuardSettings, limit: int, window: float, burst: int):
    store = await open_store(settings)
    try:
        identity = f"demo-{int(time.time() * 1000)}"
        fixed = FixedWindowRateLimiter(store, limit, window)
        sliding = SlidingWindowRateLimiter(store, limit, window)
        fixed_allowed = sum([(await fixed.allow(identity)).allowed for _ in range(burst)])
        sliding_allowed = sum([(await sliding.allow(identity)).allowed for _ in range(burst)])
        return fixed_allowed, sliding_allowed
    finally:
        await store.close()


@app.command()
def ratelimit(
    limit: int = typer.Option(5, "--limit", min=1, help="Requests allowed per window"),
    window: float = typer.Option(60.0, "--window", help="Window length in seconds"),
    burst: int = typer.Option(12, "--burst", min=1, help="Requests to send"),
    backend: Optional[str] = typer.Option(None, "--backend", "-b", help="Store backend: memory or valkey"),
):
    """Send a burst through both rate limiters"""
    settings = load_demo_settings(backend=backend)
    configure_logging(settings.log_level, rich_output=True, console=console)
    print_section("RATE LIMITING")

    try:
        fixed_allowed, sliding_allowed = asyncio.run(run_rate_limit(settings, limit, window, burst))
    except CacheGuardError as e:
        console.print(f"[red]❌ Demo failed: {escape(str(e))}[/red]")
        raise typer.Exit(code=1)

    table = Table(box=box.ROUNDED)
    table.add_column("Limiter", style="cyan")
    table.add_column("Allowed", justify="right", style="green")
    table.add_column("Rejected", justify="right", style="red")
    table.add_row("fixed window", str(fixed_allowed), str(burst - fixed_allowed))
    table.add_row("sliding window", str(sliding_allowed), str(burst - sliding_allowed))
    console.print(table)


if __name__ == "__main__":
    app()
