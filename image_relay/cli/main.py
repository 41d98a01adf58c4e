"""
CLI interface for Image Relay.

Provides command-line access to generation, prompt tools, credentials and
history.
"""

import asyncio
import os
import sys
import uuid
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from image_relay.config.loader import RelaySettings, load_settings
from image_relay.core.errors import OrchestrationError
from image_relay.core.lifecycle import UnitStatus
from image_relay.core.logger import mask_secret
from image_relay.sdk.relay import ImageRelay
from image_relay.storage.credentials import CredentialStore, env_var_for
from image_relay.storage.db import initialize_schema
from image_relay.storage.history import HistoryLedger
from image_relay.storage.kv import SqliteKeyValueStore

app = typer.Typer()
tokens_app = typer.Typer(help="Manage provider credentials.")
history_app = typer.Typer(help="Inspect and prune generation history.")
app.add_typer(tokens_app, name="tokens")
app.add_typer(history_app, name="history")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

def _settings(ctx: typer.Context) -> RelaySettings:
    """Load settings from the --config path stored on the root context."""
    return load_settings((ctx.obj or {}).get("config"))


def _store(settings: RelaySettings) -> SqliteKeyValueStore:
    return SqliteKeyValueStore(settings.history.db_path)


def _ledger(settings: RelaySettings) -> HistoryLedger:
    return HistoryLedger(
        _store(settings),
        ttl=settings.history.ttl,
        max_items=settings.history.max_items,
    )


def _build_relay(settings: RelaySettings) -> ImageRelay:
    """Create the relay used by commands (patched in tests)."""
    return ImageRelay(settings)


def _print_failure(error: OrchestrationError) -> None:
    console.print(f"[red]Error ({error.reason}):[/] {error}")
    upstream = error.details.get("upstream")
    if upstream:
        console.print(f"[dim]upstream: {upstream}[/]")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        envvar="IMAGE_RELAY_CONFIG",
        help="Path to YAML configuration file"
    )
):
    """Image Relay CLI."""
    ctx.obj = {"config": config}
    if ctx.invoked_subcommand is None:
        console.print("Image Relay - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the Image Relay database."""
    try:
        settings = _settings(ctx)
        initialize_schema(settings.history.db_path)
        console.print(f"[green]✓[/] Database initialized at {settings.history.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def generate(
    ctx: typer.Context,
    prompt: str = typer.Argument(..., help="Text prompt"),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Provider id"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model id"),
    width: Optional[int] = typer.Option(None, "--width", "-W", help="Image width"),
    height: Optional[int] = typer.Option(None, "--height", "-H", help="Image height"),
    steps: Optional[int] = typer.Option(None, "--steps", "-s", help="Inference steps"),
    seed: Optional[int] = typer.Option(None, "--seed", help="Random seed"),
    negative: str = typer.Option("", "--negative", "-n", help="Negative prompt"),
    upscale: Optional[bool] = typer.Option(
        None,
        "--upscale/--no-upscale",
        help="Chain an upscale step (default from config)"
    ),
):
    """Generate an image and record it in history."""
    try:
        settings = _settings(ctx)
        relay = _build_relay(settings)
        request = relay.build_request(
            prompt,
            provider=provider,
            model=model,
            width=width,
            height=height,
            steps=steps,
            seed=seed,
            negative_prompt=negative,
        )
    except (KeyError, ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    display_name = settings.provider(request.provider).display_name
    console.print(f"Sending request to {display_name}...")

    async def _run():
        try:
            lifecycle = relay.lifecycle(f"cli-{uuid.uuid4().hex[:8]}", request, upscale=upscale)
            lifecycle.start()
            return await lifecycle.wait()
        finally:
            await relay.aclose()

    try:
        unit = asyncio.run(_run())
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if unit.status is not UnitStatus.SUCCEEDED:
        console.print(f"[red]Error ({unit.error_code}):[/] {unit.error}")
        upstream = unit.error_details.get("upstream")
        if upstream:
            console.print(f"[dim]upstream: {upstream}[/]")
        sys.exit(EXIT_CODE_FAIL)

    result = unit.result
    table = Table(title="Generated Image")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("URL", result.url)
    table.add_row("Provider", result.provider)
    table.add_row("Model", result.model)
    table.add_row("Size", f"{request.width} x {request.height}")
    table.add_row("Steps", str(result.steps))
    table.add_row("Seed", str(result.seed))
    table.add_row("Duration", result.duration or "-")
    if unit.history_id:
        table.add_row("History id", unit.history_id)
    console.print(table)

    if unit.advisory is not None:
        console.print(f"[yellow]Note:[/] {unit.advisory}, showing original image")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def optimize(
    ctx: typer.Context,
    prompt: str = typer.Argument(..., help="Prompt to optimize"),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="LLM provider id"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="LLM model id"),
    lang: str = typer.Option("en", "--lang", "-l", help="Output language (en or zh)"),
):
    """Rewrite a prompt with an LLM provider."""
    settings = _settings(ctx)
    relay = _build_relay(settings)

    async def _run():
        try:
            return await relay.optimize_prompt(prompt, provider_id=provider, model=model, lang=lang)
        finally:
            await relay.aclose()

    try:
        optimized = asyncio.run(_run())
    except OrchestrationError as e:
        _print_failure(e)
        sys.exit(EXIT_CODE_FAIL)
    except (KeyError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(optimized)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def translate(
    ctx: typer.Context,
    prompt: str = typer.Argument(..., help="Prompt to translate to English"),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="LLM provider id"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="LLM model id"),
):
    """Translate a prompt to English."""
    settings = _settings(ctx)
    relay = _build_relay(settings)

    async def _run():
        try:
            return await relay.translate_prompt(prompt, provider_id=provider, model=model)
        finally:
            await relay.aclose()

    try:
        translated = asyncio.run(_run())
    except OrchestrationError as e:
        _print_failure(e)
        sys.exit(EXIT_CODE_FAIL)
    except (KeyError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(translated)
    sys.exit(EXIT_CODE_PASS)


# ---------------------------------------------------------------------------
# tokens
# ---------------------------------------------------------------------------

@tokens_app.command("set")
def tokens_set(
    ctx: typer.Context,
    pool: str = typer.Argument(..., help="Credential pool (usually the provider id)"),
    tokens: List[str] = typer.Argument(..., help="Tokens, comma or space separated"),
):
    """Store the tokens of a credential pool, replacing previous ones."""
    settings = _settings(ctx)
    saved = CredentialStore(_store(settings), use_env=False).save(pool, tokens)
    console.print(f"[green]✓[/] {len(saved)} token(s) saved for {pool}")


@tokens_app.command("show")
def tokens_show(ctx: typer.Context):
    """List credential pools and their (masked) tokens."""
    settings = _settings(ctx)
    credentials = CredentialStore(_store(settings))
    pools = sorted({p.credential_pool for p in settings.providers.values()})

    table = Table(title="Credential Pools")
    table.add_column("Pool", style="bold")
    table.add_column("Tokens")
    table.add_column("Source")
    table.add_column("Auth required")
    for pool in pools:
        tokens = credentials.load(pool)
        requires_auth = any(
            p.requires_auth for p in settings.providers.values() if p.credential_pool == pool
        )
        source = env_var_for(pool) if credentials.use_env and _env_has(pool) else "store"
        table.add_row(
            pool,
            ", ".join(mask_secret(t) for t in tokens) or "-",
            source if tokens else "-",
            "yes" if requires_auth else "no",
        )
    console.print(table)


def _env_has(pool: str) -> bool:
    return bool(os.getenv(env_var_for(pool)))


@tokens_app.command("clear")
def tokens_clear(ctx: typer.Context, pool: str = typer.Argument(..., help="Credential pool")):
    """Remove the stored tokens of a credential pool."""
    settings = _settings(ctx)
    CredentialStore(_store(settings), use_env=False).clear(pool)
    console.print(f"[green]✓[/] Tokens cleared for {pool}")


# ---------------------------------------------------------------------------
# history
# ---------------------------------------------------------------------------

@history_app.command("list")
def history_list(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum entries to show")
):
    """Show unexpired history entries, most recent first."""
    entries = _ledger(_settings(ctx)).list()
    if not entries:
        console.print("[dim]No history entries.[/]")
        return

    table = Table(title="Generation History")
    table.add_column("Id")
    table.add_column("When")
    table.add_column("Provider / Model")
    table.add_column("Size")
    table.add_column("Seed")
    table.add_column("Prompt")
    for entry in entries[:limit]:
        table.add_row(
            entry.id,
            entry.timestamp.strftime("%Y-%m-%d %H:%M"),
            f"{entry.provider_name} / {entry.model_name}",
            f"{entry.width}x{entry.height}",
            str(entry.seed),
            entry.prompt if len(entry.prompt) <= 60 else entry.prompt[:57] + "...",
        )
    console.print(table)


@history_app.command("show")
def history_show(ctx: typer.Context, entry_id: str = typer.Argument(..., help="History entry id")):
    """Show one history entry, expired or not."""
    entry = _ledger(_settings(ctx)).get(entry_id)
    if entry is None:
        console.print(f"[red]Error:[/] No history entry {entry_id}")
        sys.exit(EXIT_CODE_FAIL)

    for key, value in entry.to_dict().items():
        console.print(f"[bold]{key}:[/] {value}")


@history_app.command("remove")
def history_remove(ctx: typer.Context, entry_id: str = typer.Argument(..., help="History entry id")):
    """Delete one history entry."""
    _ledger(_settings(ctx)).remove(entry_id)
    console.print(f"[green]✓[/] Removed {entry_id}")


@history_app.command("clear")
def history_clear(ctx: typer.Context):
    """Delete every history entry."""
    _ledger(_settings(ctx)).clear()
    console.print("[green]✓[/] History cleared")


@history_app.command("prune")
def history_prune(ctx: typer.Context):
    """Remove expired history entries now."""
    removed = _ledger(_settings(ctx)).clear_expired()
    console.print(f"[green]✓[/] Removed {removed} expired entr{'y' if removed == 1 else 'ies'}")


@history_app.command("stats")
def history_stats(ctx: typer.Context):
    """Count stored, valid and expired entries."""
    stats = _ledger(_settings(ctx)).stats()
    console.print(f"Total: {stats.total}  Valid: {stats.valid}  Expired: {stats.expired}")


if __name__ == "__main__":
    app()
