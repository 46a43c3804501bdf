"""CLI commands for comicpipe using Typer and Rich.

Implements the CLI commands:
- create-user: Register an API user and print its bearer token
- generate: Create and run a new comic generation project
- resume: Resume a failed project
- abort: Abort an active project
- status: Show detailed project information
- list: List all projects in a table
"""

import asyncio
import secrets
import uuid
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from sqlalchemy import func, select

from comicpipe import validate_configuration
from comicpipe.api.deps import hash_token
from comicpipe.config import settings
from comicpipe.db import async_session, init_database
from comicpipe.db.models import Character, Page, PipelineRun, Project, User
from comicpipe.errors import ComicPipeError
from comicpipe.orchestrator.pipeline import PipelineOrchestrator
from comicpipe.orchestrator.progress import calculate_progress, get_current_step
from comicpipe.orchestrator.state import is_active
from comicpipe.pipeline.registry import default_registry
from comicpipe.schemas.brief import StoryBrief

POLL_INTERVAL_SECONDS = 1.0
CLI_USER_NAME = "cli"

app = typer.Typer(name="comicpipe", help="AI-powered comic generation pipeline")
console = Console()


@app.command(name="create-user")
def create_user(
    name: str = typer.Argument(..., help="Display name of the new user"),
):
    """Create an API user and print its bearer token (shown only once)."""
    asyncio.run(_create_user_async(name))


async def _create_user_async(name: str):
    await init_database()

    token = secrets.token_urlsafe(32)
    async with async_session() as session:
        user = User(name=name, api_token_hash=hash_token(token))
        session.add(user)
        await session.commit()
        await session.refresh(user)

    console.print(f"[green]Created user:[/green] {user.name} ({user.id})")
    console.print(f"[bold]API token:[/bold] {token}")
    console.print("[yellow]Store this token now; it cannot be shown again.[/yellow]")


@app.command()
def generate(
    brief: str = typer.Argument(..., help="Story description for the comic"),
    style: str = typer.Option("manga", "--style", "-s", help="Art style"),
    genre: Optional[str] = typer.Option(None, "--genre", "-g", help="Story genre"),
    pages: int = typer.Option(4, "--pages", "-p", help="Number of pages (1-16)"),
    user: str = typer.Option(CLI_USER_NAME, "--user", "-u", help="Owner user name"),
):
    """Generate a new comic from a story description.

    Creates a new project and runs the full pipeline: story analysis, script,
    characters, designs, layouts, panel artwork, dialogue and finalizing.
    """
    # Fail-fast configuration validation
    try:
        validate_configuration()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        raise typer.Exit(code=1)

    estimated = pages * settings.pipeline.seconds_per_page
    console.print(f"[yellow]Estimated time:[/yellow] ~{estimated}s ({pages} pages)")
    console.print()

    asyncio.run(_generate_async(brief, style, genre, pages, user))


async def _generate_async(brief: str, style: str, genre: Optional[str], pages: int, user_name: str):
    """Async implementation of generate command."""
    # Initialize database
    await init_database()

    owner = await _get_or_create_user(user_name)
    orchestrator = PipelineOrchestrator(default_registry())

    try:
        handle = await orchestrator.start(
            owner.id,
            StoryBrief(synopsis=brief, art_style=style, total_pages=pages, genre=genre),
        )
    except ComicPipeError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(code=1)

    console.print(f"[green]Created project:[/green] {handle.project_id}")
    console.print()
    await _follow_run(orchestrator, handle.project_id)


@app.command()
def resume(
    project_id: str = typer.Argument(..., help="Project UUID to resume"),
):
    """Resume a failed project.

    Restarts the pipeline at the first stage without committed output.
    """
    # Fail-fast configuration validation
    try:
        validate_configuration()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        raise typer.Exit(code=1)

    asyncio.run(_resume_async(project_id))


async def _resume_async(project_id_str: str):
    """Async implementation of resume command."""
    project_uuid = _parse_project_id(project_id_str)

    # Initialize database
    await init_database()

    project = await _load_project(project_uuid)

    # Check if already complete
    if project.generation_stage == "complete":
        console.print("[green]Project already complete![/green]")
        return

    orchestrator = PipelineOrchestrator(default_registry())
    try:
        handle = await orchestrator.resume(project.user_id, project.id)
    except ComicPipeError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        if is_active(project.generation_stage):
            console.print(f"[yellow]If no process is running it, abort it first:[/yellow] comicpipe abort {project.id}")
        raise typer.Exit(code=1)

    console.print(f"[yellow]Resuming project:[/yellow] {project.id}")
    console.print(f"[yellow]New run:[/yellow] {handle.run_id}")
    console.print()
    await _follow_run(orchestrator, project.id)


@app.command()
def abort(
    project_id: str = typer.Argument(..., help="Project UUID to abort"),
    reason: str = typer.Option("Aborted from CLI", "--reason", "-r", help="Recorded abort reason"),
):
    """Abort an active project.

    A stage already in flight finishes, but its output is discarded.
    """
    asyncio.run(_abort_async(project_id, reason))


async def _abort_async(project_id_str: str, reason: str):
    """Async implementation of abort command."""
    project_uuid = _parse_project_id(project_id_str)

    # Initialize database
    await init_database()

    project = await _load_project(project_uuid)
    orchestrator = PipelineOrchestrator(default_registry())
    if await orchestrator.abort(project.id, reason):
        console.print(f"[yellow]Aborted project:[/yellow] {project.id}")
        console.print(f"[yellow]You can resume it with:[/yellow] comicpipe resume {project.id}")
    else:
        console.print(f"Project is already '{project.generation_stage}', nothing to abort")


@app.command()
def status(
    project_id: str = typer.Argument(..., help="Project UUID"),
):
    """Show detailed project status and information."""
    asyncio.run(_status_async(project_id))


async def _status_async(project_id_str: str):
    """Async implementation of status command."""
    project_uuid = _parse_project_id(project_id_str)

    # Initialize database
    await init_database()

    async with async_session() as session:
        project = await session.get(Project, project_uuid)

        if not project:
            console.print(f"[red]Error:[/red] Project not found: {project_uuid}")
            raise typer.Exit(code=1)

        page_count = (await session.execute(
            select(func.count(Page.id)).where(Page.project_id == project.id)
        )).scalar()
        character_count = (await session.execute(
            select(func.count(Character.id)).where(Character.project_id == project.id)
        )).scalar()

        # Query latest pipeline run
        run_result = await session.execute(
            select(PipelineRun)
            .where(PipelineRun.project_id == project.id)
            .order_by(PipelineRun.started_at.desc())
            .limit(1)
        )
        latest_run = run_result.scalar_one_or_none()

    # Color-code status
    status_color = _get_status_color(project.generation_stage)
    status_display = f"[{status_color}]{project.generation_stage}[/{status_color}]"

    # Truncate synopsis for display
    synopsis_display = project.synopsis if len(project.synopsis) <= 80 else project.synopsis[:77] + "..."
    groups = project.generation_progress or {}

    info_lines = [
        f"[bold]ID:[/bold] {project.id}",
        f"[bold]Title:[/bold] {project.title}",
        f"[bold]Synopsis:[/bold] {synopsis_display}",
        f"[bold]Status:[/bold] {status_display}",
        f"[bold]Step:[/bold] {get_current_step(project.generation_stage)}",
        f"[bold]Progress:[/bold] {calculate_progress(groups)}% "
        f"(script {groups.get('script', 0)}, characters {groups.get('characters', 0)}, "
        f"storyboard {groups.get('storyboard', 0)}, preview {groups.get('preview', 0)})",
        f"[bold]Style:[/bold] {project.style}",
        f"[bold]Pages:[/bold] {page_count} of {project.total_pages}"
        + (" (preview)" if project.preview_only else ""),
        f"[bold]Characters:[/bold] {character_count}",
        f"[bold]Created:[/bold] {project.created_at.strftime('%Y-%m-%d %H:%M:%S')}",
        f"[bold]Updated:[/bold] {project.updated_at.strftime('%Y-%m-%d %H:%M:%S')}",
    ]

    if project.genre:
        info_lines.append(f"[bold]Genre:[/bold] {project.genre}")

    # Add error message if failed
    if project.generation_stage == "failed" and project.error_message:
        info_lines.append(f"[bold]Error:[/bold] [red]{project.error_message}[/red]")

    # Add latest run duration if available
    if latest_run and latest_run.total_duration_seconds:
        info_lines.append(f"[bold]Last Run Duration:[/bold] {_format_duration(latest_run.total_duration_seconds)}")

    panel = Panel(
        "\n".join(info_lines),
        title="[bold]Project Status[/bold]",
        border_style="blue",
    )
    console.print(panel)


@app.command(name="list")
def list_projects():
    """List all comic generation projects."""
    asyncio.run(_list_async())


async def _list_async():
    """Async implementation of list command."""
    # Initialize database
    await init_database()

    async with async_session() as session:
        result = await session.execute(
            select(Project).order_by(Project.created_at.desc())
        )
        projects = result.scalars().all()

    if not projects:
        console.print("[yellow]No projects found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("ID", style="dim")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Created")

    for project in projects:
        # Truncate ID to first 8 chars + "..."
        id_display = str(project.id)[:8] + "..."
        title_display = project.title if len(project.title) <= 40 else project.title[:37] + "..."

        status_color = _get_status_color(project.generation_stage)
        status_display = f"[{status_color}]{project.generation_stage}[/{status_color}]"

        table.add_row(
            id_display,
            title_display,
            status_display,
            f"{calculate_progress(project.generation_progress)}%",
            project.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


async def _follow_run(orchestrator: PipelineOrchestrator, project_id: uuid.UUID):
    """Show live progress until the run's task ends, then report the outcome."""
    try:
        with console.status("[bold green]Starting pipeline...") as status:
            while orchestrator.is_running(project_id):
                project = await orchestrator.store.get_project(project_id)
                if project is not None:
                    progress = calculate_progress(project.generation_progress)
                    status.update(f"[bold green]{get_current_step(project.generation_stage)} {progress}%")
                await asyncio.sleep(POLL_INTERVAL_SECONDS)
    except asyncio.CancelledError:
        # Ctrl-C: stop the run and leave the project resumable
        await orchestrator.shutdown()
        await orchestrator.abort(project_id, "Interrupted from CLI")
        console.print()
        console.print("[yellow]Pipeline interrupted. You can resume this project later with:[/yellow]")
        console.print(f"  comicpipe resume {project_id}")
        raise

    project = await orchestrator.store.get_project(project_id)
    if project is not None and project.generation_stage == "complete":
        console.print(f"[green]✓[/green] Comic generation complete: {project.title}")
        if project.preview_only:
            console.print(f"[yellow]Preview only:[/yellow] first pages of {project.total_pages} generated")
        return

    console.print()
    reason = project.error_message if project is not None else "unknown"
    console.print(f"[red]✗ Pipeline failed:[/red] {reason}")
    console.print(f"[yellow]You can retry with:[/yellow] comicpipe resume {project_id}")
    raise typer.Exit(code=1)


async def _get_or_create_user(name: str) -> User:
    async with async_session() as session:
        result = await session.execute(select(User).where(User.name == name).limit(1))
        user = result.scalar_one_or_none()
        if user is None:
            # Token is never printed; use create-user for API access
            user = User(name=name, api_token_hash=hash_token(secrets.token_urlsafe(32)))
            session.add(user)
            await session.commit()
            await session.refresh(user)
        return user


async def _load_project(project_uuid: uuid.UUID) -> Project:
    async with async_session() as session:
        project = await session.get(Project, project_uuid)
    if not project:
        console.print(f"[red]Error:[/red] Project not found: {project_uuid}")
        raise typer.Exit(code=1)
    return project


def _parse_project_id(project_id_str: str) -> uuid.UUID:
    try:
        return uuid.UUID(project_id_str)
    except ValueError:
        console.print(f"[red]Error:[/red] Invalid project UUID: {project_id_str}")
        raise typer.Exit(code=1)


def _format_duration(duration: float) -> str:
    if duration < 60:
        return f"{duration:.1f}s"
    mins = int(duration // 60)
    secs = duration % 60
    return f"{mins}m {secs:.1f}s"


def _get_status_color(status: str) -> str:
    """Get Rich color for a project stage.

    Color coding:
    - complete: green
    - failed: red
    - in-progress stages: yellow
    - queued: dim
    """
    if status == "complete":
        return "green"
    elif status == "failed":
        return "red"
    elif status == "queued":
        return "dim"
    elif is_active(status):
        return "yellow"
    else:
        return "white"
