"""Command line interface for StoryForge."""

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
from dotenv import find_dotenv, load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from storyforge.context import GenerationConfig, get_default_config
from storyforge.credentials import EnvironmentCredentialStore
from storyforge.diagnostics import DiagnosticsLogger
from storyforge.model_cache import ModelListCache
from storyforge.models import (
    BookFormat,
    BookSnapshot,
    CloudProvider,
    IllustrationStyle,
    ImageProviderKind,
    PhaseKind,
    TextProviderKind,
)
from storyforge.orchestrator import CreationOrchestrator
from storyforge.safety import validate_concept
from storyforge.utils import get_output_directory

console = Console()


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def load_config(text_provider: str | None = None, image_provider: str | None = None) -> GenerationConfig:
    """Environment-derived configuration with command-line overrides."""
    load_dotenv(find_dotenv(usecwd=True), override=False)
    config = get_default_config()
    updates = {}
    if text_provider:
        updates["text_provider"] = TextProviderKind(text_provider)
    if image_provider:
        updates["image_provider"] = ImageProviderKind(image_provider)
    return config.model_copy(update=updates) if updates else config


def save_book(snapshot: BookSnapshot, output: Path | None) -> Path:
    """Write ``story.json`` plus ``cover.png`` and ``page-NN.png`` for each image."""
    directory = Path(output) if output else get_output_directory(snapshot.book.title)
    directory.mkdir(parents=True, exist_ok=True)

    story = snapshot.book.model_dump(mode="json")
    story["format"] = snapshot.format.value
    story["style"] = snapshot.style.value
    story["textProvider"] = snapshot.text_provider
    story["imageProvider"] = snapshot.image_provider
    story["createdAt"] = snapshot.created_at.isoformat()
    (directory / "story.json").write_text(json.dumps(story, indent=2), encoding="utf-8")

    for index, image in sorted(snapshot.images.items()):
        name = "cover.png" if index == 0 else f"page-{index:02d}.png"
        image.save(directory / name, format="PNG")
    return directory


async def _run_create(orchestrator: CreationOrchestrator, concept: str, pages: int | None,
                      style: IllustrationStyle, book_format: BookFormat) -> BookSnapshot | None:
    run = orchestrator.start(concept, pages, style, book_format)

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total}"),
        console=console,
    ) as progress:
        task_id = progress.add_task("Writing story...", total=None)
        try:
            async for event in run.events():
                phase = event.phase
                if phase.kind == PhaseKind.GENERATING_TEXT:
                    status = (event.message or "Writing story...").splitlines()[-1][:80]
                    progress.update(task_id, description=status)
                elif phase.kind == PhaseKind.GENERATING_IMAGES:
                    description = event.message or "Illustrating pages..."
                    progress.update(task_id, description=description, completed=phase.completed, total=phase.total)
                elif phase.kind == PhaseKind.FAILED:
                    console.print(f"[red]Generation failed: {phase.reason}[/red]")
        except asyncio.CancelledError:
            await run.cancel()
            raise

    return await run.wait()


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def cli(verbose: bool):
    """StoryForge - turn a story idea into an illustrated children's book."""
    setup_logging(verbose)


@cli.command()
@click.argument("concept")
@click.option("--pages", "-p", type=int, default=None, help="Number of story pages (clamped to 4-16)")
@click.option(
    "--style",
    type=click.Choice([s.value for s in IllustrationStyle]),
    default=IllustrationStyle.ILLUSTRATION.value,
    help="Illustration style",
)
@click.option(
    "--format", "book_format",
    type=click.Choice([f.value for f in BookFormat]),
    default=BookFormat.STANDARD.value,
    help="Book format",
)
@click.option("--text-provider", type=click.Choice([k.value for k in TextProviderKind]), default=None)
@click.option("--image-provider", type=click.Choice([k.value for k in ImageProviderKind]), default=None)
@click.option("--output", "-o", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Directory for story.json and the images")
def create(concept: str, pages: int | None, style: str, book_format: str,
           text_provider: str | None, image_provider: str | None, output: Path | None):
    """Generate a complete illustrated book from CONCEPT."""
    config = load_config(text_provider, image_provider)
    orchestrator = CreationOrchestrator(config, EnvironmentCredentialStore())

    try:
        snapshot = asyncio.run(
            _run_create(orchestrator, concept, pages, IllustrationStyle(style), BookFormat(book_format))
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]Generation cancelled.[/yellow]")
        sys.exit(130)

    if snapshot is None:
        sys.exit(1)

    directory = save_book(snapshot, output)
    book = snapshot.book
    missing = book.page_count + 1 - len(snapshot.images)
    console.print(Panel.fit(
        f"[bold]{book.title}[/bold]\n{book.author_line}\n\n[italic]{book.moral}[/italic]",
        title="Book created",
        border_style="green",
    ))
    console.print(f"[green]Saved {len(snapshot.images)} image(s) and story.json to {directory}[/green]")
    if missing:
        console.print(f"[yellow]{missing} illustration(s) could not be generated.[/yellow]")


@cli.command()
@click.argument("concept")
def check(concept: str):
    """Show whether CONCEPT passes the content safety check."""
    result = validate_concept(concept)
    if result.allowed:
        console.print(f"[green]Allowed:[/green] {result.sanitized_concept}")
    else:
        console.print(f"[red]Blocked:[/red] {result.reason}")
        sys.exit(1)


@cli.command()
@click.option("--provider", type=click.Choice([p.value for p in CloudProvider]), default=None,
              help="Only refresh this provider")
@click.option("--force", is_flag=True, help="Ignore the cached catalog")
def models(provider: str | None, force: bool):
    """Refresh and list the cloud model catalogs."""
    config = load_config()
    cache = ModelListCache(EnvironmentCredentialStore(), config.model_cache_path)

    async def _refresh():
        if provider:
            await cache.refresh_models(CloudProvider(provider), force=force)
        elif force:
            await asyncio.gather(*(
                cache.refresh_models(p, force=True)
                for p in CloudProvider if cache.credentials.is_authenticated(p)
            ))
        else:
            await cache.refresh_all_authenticated()

    asyncio.run(_refresh())

    providers = [CloudProvider(provider)] if provider else list(CloudProvider)
    for cloud in providers:
        table = Table(title=cloud.display_name)
        table.add_column("Modality", style="cyan")
        table.add_column("Model id")
        table.add_column("Name", style="dim")
        for info in cache.text_models.get(cloud, []):
            table.add_row("text", info.id, info.display_name)
        for info in cache.image_models.get(cloud, []):
            table.add_row("image", info.id, info.display_name)
        console.print(table)
        if cache.last_error.get(cloud):
            console.print(f"[yellow]{cloud.display_name}: {cache.last_error[cloud]}[/yellow]")


@cli.command()
@click.option("--limit", "-n", type=int, default=20, help="Number of recent entries to show")
def diagnostics(limit: int):
    """Show recent illustration diagnostics."""
    config = load_config()
    entries = DiagnosticsLogger(config.diagnostics_path).read_entries(limit)
    if not entries:
        console.print("[yellow]No diagnostics recorded yet.[/yellow]")
        return

    table = Table(title=str(config.diagnostics_path))
    for column in ("Time", "Event", "Provider", "Page", "Variant", "Error"):
        table.add_column(column)
    for entry in entries:
        table.add_row(
            str(entry.get("timestamp", ""))[:19],
            entry.get("event", ""),
            entry.get("provider", ""),
            str(entry.get("pageIndex", "")),
            f"{entry.get('variantLabel', '')} #{entry.get('attemptIndex', '')}" if entry.get("variantLabel") else "",
            (entry.get("errorDescription") or "")[:60],
        )
    console.print(table)


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
