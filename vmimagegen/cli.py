"""Thin CLI wrapper for vmimagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import Annotated, NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler

from vmimagegen import __version__
from vmimagegen.config import Settings, get_settings, print_settings_json

app = typer.Typer(
    name="vmimagegen",
    help="VM image generator - build a base image and its variants",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"vmimagegen version {__version__}")
        raise typer.Exit()


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def _fail(exc: Exception) -> NoReturn:
    code = getattr(exc, "code", None)
    prefix = f"Error ({code})" if code else "Error"
    console.print(f"[red]{prefix}: {exc}[/red]")
    raise typer.Exit(code=1) from None


def _build_errors() -> tuple[type[Exception], ...]:
    from vmimagegen.builds.artifacts import ArtifactError
    from vmimagegen.builds.orchestrator import BuildVersionError, PrivilegeError
    from vmimagegen.console.session import ConsoleError
    from vmimagegen.console.vm import VMError
    from vmimagegen.disk.layout import LayoutError
    from vmimagegen.disk.loop import PartitionsNotReadyError
    from vmimagegen.disk.session import CleanupError, DiskSessionError
    from vmimagegen.recipes.io import RecipeError
    from vmimagegen.runner import ToolFailure

    return (
        ArtifactError,
        BuildVersionError,
        CleanupError,
        ConsoleError,
        DiskSessionError,
        LayoutError,
        PartitionsNotReadyError,
        PrivilegeError,
        RecipeError,
        ToolFailure,
        VMError,
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """VM image generator - build a base image and its variants."""


@app.command()
def build(
    build_version: Annotated[
        str | None,
        typer.Argument(help="Build identifier (defaults to today's date)"),
    ] = None,
    recipes_dir: Annotated[
        Path | None,
        typer.Option("--recipes-dir", "-r", help="Directory of recipe files"),
    ] = None,
    output_dir: Annotated[
        Path | None,
        typer.Option("--output-dir", "-o", help="Directory receiving artifacts"),
    ] = None,
) -> None:
    """Build the base image and every variant recipe (requires root)."""
    from vmimagegen.builds.orchestrator import run_build

    settings = _with_overrides(
        get_settings(), recipes_dir=recipes_dir, output_dir=output_dir
    )
    setup_logging(settings.log_level)

    try:
        report = run_build(settings, build_version=build_version)
    except _build_errors() as e:
        _fail(e)

    console.print(
        f"[green]Build {report.build_version} finished: "
        f"{len(report.artifacts)} artifact(s)[/green]"
    )
    for artifact in report.artifacts:
        console.print(f"  {artifact.path}")
        console.print(f"    sha256: {artifact.sha256}")
    if report.manifest_path:
        console.print(f"  Manifest: {report.manifest_path}")


@app.command("build-in-vm")
def build_in_vm(
    build_version: Annotated[
        str | None,
        typer.Argument(help="Build identifier (defaults to today's date)"),
    ] = None,
    iso: Annotated[
        Path | None,
        typer.Option("--iso", help="Installer ISO (default: newest local match)"),
    ] = None,
) -> None:
    """Run the build inside a throwaway QEMU VM booted from an installer ISO."""
    from vmimagegen.builds.orchestrator import resolve_build_version
    from vmimagegen.console.remote import run_remote_build

    settings = get_settings()
    setup_logging(settings.log_level)
    try:
        version = resolve_build_version(build_version)
        moved = run_remote_build(settings, version, iso=iso)
    except _build_errors() as e:
        _fail(e)

    console.print(f"[green]Collected {len(moved)} file(s) from the build VM[/green]")
    for path in moved:
        console.print(f"  {path}")


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings), soft_wrap=True, markup=False)
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Project directory:   {settings.project_dir}")
        console.print(f"  Output directory:    {settings.output_path}")
        console.print(f"  Temp directory:      {settings.tmp_path}")
        console.print(f"  Recipes directory:   {settings.recipes_path}")
        console.print(f"  Package cache:       {settings.package_cache_dir}")
        console.print()
        console.print("[bold]Image:[/bold]")
        console.print(f"  Disk size:           {settings.default_disk_size}")
        console.print(f"  Architecture:        {settings.arch or '(from dpkg)'}")
        console.print(f"  Mirror:              {settings.mirror}")
        console.print()
        console.print("[bold]Build VM:[/bold]")
        console.print(f"  Memory (MiB):        {settings.vm_memory_mb}")
        console.print(f"  Scratch disk:        {settings.vm_scratch_disk_size}")
        console.print(f"  ISO glob:            {settings.vm_iso_glob}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Console per byte:    {settings.console_char_timeout}")
        console.print(f"  Partition max delay: {settings.partition_wait_max_delay}")
        console.print()
        console.print(f"  Log level:           {settings.log_level}")


def _with_overrides(settings: Settings, **overrides: Path | None) -> Settings:
    update = {k: v for k, v in overrides.items() if v is not None}
    if not update:
        return settings
    return settings.model_copy(update=update)


recipes_app = typer.Typer(help="Inspect image recipes")
app.add_typer(recipes_app, name="recipes")


@recipes_app.command("list")
def recipes_list(
    recipes_dir: Annotated[
        Path | None,
        typer.Option("--recipes-dir", "-r", help="Directory of recipe files"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List the base recipe and its variants in build order."""
    from vmimagegen.recipes.io import RecipeError, load_registry

    settings = _with_overrides(get_settings(), recipes_dir=recipes_dir)
    try:
        registry = load_registry(settings.recipes_path)
    except RecipeError as e:
        _fail(e)

    recipes = [registry.base, *registry.variants]
    if json_output:
        output = [r.model_dump(mode="json", exclude_none=True) for r in recipes]
        console.print(json.dumps(output, indent=2), soft_wrap=True, markup=False)
        return

    console.print(f"[bold]Found {len(recipes)} recipe(s):[/bold]")
    console.print()
    for r in recipes:
        console.print(f"  [green]{r.name}[/green] ({r.role.value})")
        if r.image_name:
            console.print(f"    Image: {r.image_name}")
        if r.disk_size:
            console.print(f"    Disk size: {r.disk_size}")
        if r.packages:
            console.print(f"    Packages: {', '.join(r.packages)}")
        if r.services:
            console.print(f"    Services: {', '.join(r.services)}")
        console.print()


@recipes_app.command("validate")
def recipes_validate(
    path: Annotated[str, typer.Argument(help="Path to recipe file to validate")],
) -> None:
    """Validate a recipe file."""
    from vmimagegen.recipes.io import RecipeError, load_recipe

    file_path = Path(path)
    if not file_path.exists():
        console.print(f"[red]File not found: {path}[/red]")
        raise typer.Exit(code=1)

    try:
        recipe = load_recipe(file_path)
    except RecipeError as e:
        console.print("[red]Validation failed:[/red]")
        console.print(str(e), markup=False)
        raise typer.Exit(code=1) from None

    console.print(f"[green]✓ Valid recipe: {recipe.name}[/green]")
    console.print(f"  Role: {recipe.role.value}")
    if recipe.image_name:
        console.print(f"  Image: {recipe.image_name}")


if __name__ == "__main__":
    app()
