"""Command-line entry points."""

from __future__ import annotations

import asyncio
import json

import typer

from nexus import __version__
from nexus.config.loader import load_config
from nexus.config.schema import Config
from nexus.db import repository
from nexus.logging import setup_logging
from nexus.providers.base import ProviderName
from nexus.services import Services
from nexus.turn.events import TURN_EVENT_COMPLETE, TURN_EVENT_ERROR, TURN_EVENT_TOKEN
from nexus.turn.orchestrator import TurnRequest

app = typer.Typer(name="nexus", help="Memory-graph chat service.", no_args_is_help=True)


def _bootstrap() -> Config:
    config = load_config()
    setup_logging(json_output=config.logging.json_output, level=config.logging.level)
    return config


@app.command()
def version() -> None:
    """Print the installed version."""
    typer.echo(f"nexus {__version__}")


@app.command()
def serve(
    host: str | None = typer.Option(None, help="Bind address (defaults to config)."),
    port: int | None = typer.Option(None, help="Port (defaults to config)."),
) -> None:
    """Run the HTTP server."""
    import uvicorn

    from nexus.api.app import create_app

    config = _bootstrap()
    uvicorn.run(
        create_app(config),
        host=host or config.server.host,
        port=port or config.server.port,
        log_config=None,
    )


@app.command("init-db")
def init_db() -> None:
    """Create database tables if they do not exist."""
    config = _bootstrap()

    async def _run() -> None:
        services = Services.build(config)
        try:
            await services.database.create_all()
        finally:
            await services.aclose()

    asyncio.run(_run())
    typer.echo("Database ready")


@app.command("create-project")
def create_project(name: str = typer.Argument(..., help="Display name.")) -> None:
    """Create a project owned by the development identity and print its id."""
    config = _bootstrap()

    async def _run() -> str:
        services = Services.build(config)
        try:
            await services.database.create_all()
            async with services.database.transaction() as session:
                project = await repository.create_project(session, config.dev_user_id, name)
            return project.id
        finally:
            await services.aclose()

    typer.echo(asyncio.run(_run()))


@app.command()
def chat(
    project_id: str = typer.Argument(..., help="Project id."),
    text: str = typer.Argument(..., help="User message."),
    provider: ProviderName = typer.Option(ProviderName.OPENAI, "--provider", "-p"),
    model: str = typer.Option("gpt-4o-mini", "--model", "-m"),
) -> None:
    """Run a single turn, printing tokens as they arrive."""
    config = _bootstrap()
    request = TurnRequest(project_id=project_id, provider=provider.value, model=model, user_text=text)

    async def _run() -> int:
        services = Services.build(config)
        try:
            await services.database.create_all()
            async for event in services.orchestrator.run(request):
                if event.event == TURN_EVENT_TOKEN:
                    typer.echo(event.data["text"], nl=False)
                elif event.event == TURN_EVENT_COMPLETE:
                    typer.echo("")
                    typer.echo(json.dumps(event.data), err=True)
                elif event.event == TURN_EVENT_ERROR:
                    typer.echo("")
                    typer.echo(f"Error [{event.data['code']}]: {event.data['message']}", err=True)
                    return 1
            return 0
        finally:
            await services.aclose()

    code = asyncio.run(_run())
    if code:
        raise typer.Exit(code)
