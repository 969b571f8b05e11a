"""Command line entry point for Synergy Core."""

import asyncio
import os
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from synergy_core.catalog import ToolCatalogBuilder
from synergy_core.config import Config, set_config
from synergy_core.llm import Turn, get_provider
from synergy_core.logging import configure_logging, log
from synergy_core.orchestrator import Orchestrator, PageContext, RunEvent
from synergy_core.providers import get_agent_registry, get_client_registry, is_provider_configured
from synergy_core.providers.base import FieldSpec, Provider
from synergy_core.storage import ProviderRecord, SQLiteConfigStore, record_key
from synergy_core.tool_session import ToolSessionManager

app = typer.Typer(help="Synergy Core - agentic tool orchestration for a browser assistant")
console = Console()


def _setup(config: str, verbose: bool) -> Config:
    if verbose:
        os.environ["SYNERGY_LOGGING__LEVEL"] = "DEBUG"
    if config:
        try:
            cfg = Config.from_yaml(Path(config))
        except Exception as e:
            log.error("Failed to load config", error=str(e))
            cfg = Config.load()
    else:
        cfg = Config.load()
    set_config(cfg)
    configure_logging()
    return cfg


def _session_for(url: str, pin: list[str] | None) -> ToolSessionManager:
    session = ToolSessionManager()
    for provider_id in pin or []:
        session.pin(provider_id)
    if url:
        session.update_context(url)
    return session


def _builder(store: SQLiteConfigStore) -> ToolCatalogBuilder:
    return ToolCatalogBuilder(get_client_registry(), get_agent_registry(), store)


@app.command()
def tools(
    url: str = typer.Option("", "-u", "--url", help="Page URL used for context suggestions"),
    pin: list[str] = typer.Option(None, "--pin", help="Provider id to pin (repeatable)"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Show registered providers, the working set and the resulting tools."""
    _setup(config, verbose)
    asyncio.run(_show_tools(url, pin))


async def _show_tools(url: str, pin: list[str] | None) -> None:
    store = SQLiteConfigStore()
    try:
        providers = Table(title="Providers", show_header=True, header_style="bold cyan")
        providers.add_column("Kind")
        providers.add_column("Id", style="bold")
        providers.add_column("Name")
        providers.add_column("Configured")
        for kind, registry in (("client", get_client_registry()), ("agent", get_agent_registry())):
            for provider_id in registry.get_all_ids():
                instance = registry.get_instance(provider_id)
                record = await store.get(record_key(kind, provider_id))
                configured = instance is not None and is_provider_configured(instance, record)
                metadata = registry.get_metadata(provider_id)
                providers.add_row(
                    kind,
                    provider_id,
                    metadata.name if metadata else "",
                    "[green]yes[/green]" if configured else "[yellow]no[/yellow]",
                )
        console.print(providers)

        session = _session_for(url, pin)
        working = Table(title="Working Set", show_header=True, header_style="bold cyan")
        working.add_column("Id", style="bold")
        working.add_column("Source")
        working.add_column("Reason", overflow="fold")
        for entry in session.get_active_tools():
            working.add_row(entry.provider_id, entry.source, entry.reason or "")
        console.print(working)

        catalog = await _builder(store).build(session.get_active_client_ids(), suppressed=session.removed)
        table = Table(title=f"Tools ({len(catalog)})", show_header=True, header_style="bold cyan")
        table.add_column("Tool", style="bold")
        table.add_column("Provider")
        table.add_column("Description", overflow="fold")
        for definition in catalog.definitions:
            binding = catalog.get(definition.name)
            table.add_row(definition.name, binding.provider_id if binding else "", definition.description)
        console.print(table)
        if not session.is_within_limit(len(catalog)):
            console.print(f"[yellow]Tool count exceeds the limit of {session.max_tools_limit}.[/yellow]")
    finally:
        await store.close()


def _ask_fields(fields: list[FieldSpec], current: dict) -> dict:
    values = dict(current)
    for spec in fields:
        label = spec.label or spec.key
        if spec.required:
            label += " (required)"
        default = values.get(spec.key, spec.default)
        answer = Prompt.ask(
            label,
            default="" if default is None else str(default),
            password=spec.type == "password",
        ).strip()
        if answer:
            values[spec.key] = answer
        else:
            values.pop(spec.key, None)
    return values


@app.command()
def configure(
    provider_id: str = typer.Argument(..., help="Provider id, e.g. jira or jira-agent"),
    agent: bool = typer.Option(False, "--agent", help="Configure an agent rather than a client"),
    disable: bool = typer.Option(False, "--disable", help="Mark the provider inactive"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Enter and store credentials/config for a provider."""
    _setup(config, verbose)
    if not asyncio.run(_configure(provider_id, "agent" if agent else "client", disable)):
        raise typer.Exit(code=1)


async def _configure(provider_id: str, kind: str, disable: bool) -> bool:
    registry = get_agent_registry() if kind == "agent" else get_client_registry()
    instance: Provider | None = registry.get_instance(provider_id)
    if instance is None:
        console.print(f"[red]Unknown {kind}: {provider_id}[/red]")
        return False

    store = SQLiteConfigStore()
    try:
        key = record_key(kind, provider_id)
        record = await store.get(key) or ProviderRecord()

        if disable:
            record.is_active = False
            await store.set(key, record)
            console.print(f"[yellow]{provider_id} disabled.[/yellow]")
            return True

        console.print(Panel(f"[bold cyan]{instance.get_metadata().name}[/bold cyan]\n{instance.get_metadata().description}"))
        credentials = _ask_fields(instance.get_credential_fields(), record.credentials)
        settings = _ask_fields(instance.get_config_fields(), record.config)
        record = ProviderRecord(credentials=credentials, config=settings, is_active=True)

        instance.set_credentials(credentials)
        instance.set_config(settings)
        if kind == "client" and instance.get_credential_fields() and Confirm.ask("Test connection now?", default=True):
            try:
                await instance.initialize()
                console.print("[green]Connection OK.[/green]")
            except Exception as e:
                console.print(f"[red]Connection failed: {e}[/red]")
                if not Confirm.ask("Save anyway?", default=False):
                    return False

        await store.set(key, record)
        console.print(f"[green]Saved {kind} {provider_id}.[/green]")
        return True
    finally:
        await store.close()


def _print_event(event: RunEvent) -> None:
    if event.type == "tool.started":
        console.print(f"[dim]⚙ {event.tool_name} (iteration {event.iteration})[/dim]")
    elif event.type == "tool.completed" and event.is_error:
        console.print(f"[red]✗ {event.tool_name}: {event.content[:200]}[/red]")
    elif event.type == "run.error":
        console.print(f"[red]Error: {event.content}[/red]")


@app.command()
def chat(
    url: str = typer.Option("", "-u", "--url", help="Page URL the conversation is about"),
    message: str = typer.Option("", "-m", "--message", help="Send one message and exit"),
    pin: list[str] = typer.Option(None, "--pin", help="Provider id to pin (repeatable)"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Chat with the model using the active tools."""
    _setup(config, verbose)
    try:
        asyncio.run(_chat(url, message, pin))
    except KeyboardInterrupt:
        log.info("Shutting down...")


async def _chat(url: str, message: str, pin: list[str] | None) -> None:
    store = SQLiteConfigStore()
    llm = get_provider()
    orchestrator = Orchestrator(
        catalog_builder=_builder(store),
        session_manager=_session_for(url, pin),
        llm=llm,
        store=store,
        on_event=_print_event,
    )
    page = PageContext(url=url) if url else None
    history: list[Turn] = []
    try:
        while True:
            user_input = message or Prompt.ask("[bold]You[/bold]").strip()
            if user_input.lower() in {"exit", "quit", "/exit", "/quit"}:
                break
            if not user_input:
                continue

            result = await orchestrator.run(user_input, history=history, page_context=page)
            if result.status == "completed":
                console.print(Panel(result.final_text or "(empty response)", title="Assistant", border_style="cyan"))
                history = result.history
            elif result.status == "error":
                console.print(f"[red]Run failed: {result.error}[/red]")
            log.debug("Run finished", status=result.status, tokens=result.tokens_used)
            if message:
                break
    finally:
        await llm.close()
        await store.close()


@app.command()
def version() -> None:
    """Show version information."""
    from synergy_core import __version__
    print(f"Synergy Core v{__version__}")


def cli() -> None:
    app()


if __name__ == "__main__":
    cli()
