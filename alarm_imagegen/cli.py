"""Thin CLI wrapper for alarm_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from typer.core import TyperGroup

from alarm_imagegen import __version__
from alarm_imagegen.config import Settings, get_settings, print_settings_json
from alarm_imagegen.errors import CleanupError, ImageGenError
from alarm_imagegen.pipeline import (
    Pipeline,
    check_dependencies,
    clean_work_dir,
    new_session,
    require_root,
    unmount_image,
)
from alarm_imagegen.profiles import ProfileRegistry

console = Console()
err_console = Console(stderr=True)

EXIT_FAILURE = 1
EXIT_CLEANUP_FAILURE = 3


def _registry(settings: Settings) -> ProfileRegistry:
    return ProfileRegistry(
        settings.effective_profiles_dir,
        default_environment=settings.default_environment,
    )


def print_usage(settings: Settings | None = None) -> None:
    """Print usage and the available platforms and environments."""
    if settings is None:
        settings = get_settings()
    registry = _registry(settings)
    console.print("Usage: alarm-imagegen <command> [<arguments>]", highlight=False)
    console.print("Creates a ready to burn Arch Linux ARM image.")
    console.print()
    console.print("[bold]COMMANDS:[/bold]")
    console.print()
    console.print("  build <platform> [-e <environment>]", highlight=False)
    console.print()
    console.print("  umount <platform> [--force]", highlight=False)
    console.print("    Releases mounts and loop devices left by an interrupted build.")
    console.print()
    console.print("  clean")
    console.print("    Removes generated images and downloaded tarballs.")
    console.print()
    console.print("  config [--json]  |  profiles [--json]", highlight=False)
    console.print()
    console.print(f"Available platforms: {' '.join(registry.list_platforms())}")
    console.print()
    console.print(f"Available environments: {' '.join(registry.list_environments())}")


class UsageGroup(TyperGroup):
    """Command group that answers unknown commands with the usage text."""

    def resolve_command(self, ctx: Any, args: list[str]) -> Any:
        name = args[0] if args else ""
        if name and not name.startswith("-") and self.get_command(ctx, name) is None:
            print_usage(_settings(ctx))
            ctx.exit(0)
        return super().resolve_command(ctx, args)


app = typer.Typer(
    name="alarm-imagegen",
    cls=UsageGroup,
    help="Arch Linux ARM Image Generator - build bootable images for ARM boards",
    invoke_without_command=True,
    no_args_is_help=False,
)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _settings(ctx: Any) -> Settings:
    """Effective settings with global CLI overrides applied."""
    settings = get_settings()
    overrides = (ctx.find_root().obj or {}) if ctx is not None else {}
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"alarm-imagegen version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
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
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
    work_dir: Annotated[
        Path | None,
        typer.Option(
            "--work-dir",
            "-C",
            help="Directory for images, tarballs and mount points",
        ),
    ] = None,
) -> None:
    """Arch Linux ARM Image Generator - build bootable images for ARM boards."""
    overrides: dict[str, Any] = {}
    if work_dir is not None:
        overrides["work_dir"] = work_dir.resolve()
    if verbose:
        overrides["log_level"] = "DEBUG"
    ctx.obj = overrides

    settings = _settings(ctx)
    _configure_logging(settings.log_level)

    if ctx.invoked_subcommand is None:
        print_usage(settings)
        raise typer.Exit()


def _report_cleanup_failure(error: CleanupError, platform: str) -> None:
    """Report leaked host resources, distinct from a build failure."""
    cause = error.__context__
    if isinstance(cause, ImageGenError):
        err_console.print(f"[red]Build failed: {cause.message}[/red]")
    err_console.print()
    err_console.print("[bold red]CLEANUP FAILED - host resources are leaked[/bold red]")
    for resource, reason in error.failures:
        err_console.print(f"  [red]{resource}[/red]: {reason}")
    err_console.print()
    err_console.print(
        "Close anything using these paths, then run "
        f"[bold]alarm-imagegen umount {platform}[/bold].",
    )


@app.command()
def build(
    ctx: typer.Context,
    platform: Annotated[
        str | None,
        typer.Argument(help="Platform to build for"),
    ] = None,
    environment: Annotated[
        str | None,
        typer.Option("--env", "-e", help="Environment to install"),
    ] = None,
) -> None:
    """Build an image for a platform."""
    settings = _settings(ctx)
    try:
        session = new_session(_registry(settings), settings, platform, environment)
    except ImageGenError as e:
        err_console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(code=EXIT_FAILURE) from None

    console.print("--DETAILS-------------------------------------------------------")
    console.print(f"  Platform:          {session.platform.profile_id}")
    console.print(f"  Environment:       {session.environment.profile_id}")
    console.print(f"  Image:             {session.image_path}")
    console.print("----------------------------------------------------------------")

    try:
        require_root()
        check_dependencies()
        Pipeline(session, settings).run()
    except CleanupError as e:
        _report_cleanup_failure(e, session.platform.profile_id)
        raise typer.Exit(code=EXIT_CLEANUP_FAILURE) from None
    except ImageGenError as e:
        err_console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(code=EXIT_FAILURE) from None

    console.print(f"[green]Done! {session.image_path}[/green]")


@app.command()
def umount(
    ctx: typer.Context,
    platform: Annotated[str, typer.Argument(help="Platform whose image to release")],
    force: Annotated[
        bool,
        typer.Option("--force", help="Skip the partition layout check"),
    ] = False,
) -> None:
    """Release mounts and loop devices left by an interrupted build."""
    settings = _settings(ctx)
    try:
        _registry(settings).resolve_platform(platform)
        require_root()
        released = unmount_image(settings, platform, force=force)
    except CleanupError as e:
        _report_cleanup_failure(e, platform)
        raise typer.Exit(code=EXIT_CLEANUP_FAILURE) from None
    except ImageGenError as e:
        err_console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(code=EXIT_FAILURE) from None

    if released:
        console.print(f"Released {released} loop device(s)")
    else:
        console.print("Nothing to release")


@app.command()
def clean(ctx: typer.Context) -> None:
    """Remove generated images and downloaded tarballs."""
    settings = _settings(ctx)
    try:
        removed = clean_work_dir(settings.work_dir)
    except ImageGenError as e:
        err_console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(code=EXIT_FAILURE) from None

    for path in removed:
        console.print(f"removed '{path.name}'", highlight=False)


@app.command()
def config(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = _settings(ctx)
    if json_output:
        console.print(print_settings_json(settings), soft_wrap=True)
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Work directory:      {settings.work_dir}")
    console.print(f"  Profiles directory:  {settings.effective_profiles_dir}")
    console.print(f"  Mods directory:      {settings.resolve_path(settings.mods_dir)}")
    console.print(
        f"  Package cache:       {settings.resolve_path(settings.package_cache_dir)}"
    )
    console.print(
        f"  Package recipes:     {settings.resolve_path(settings.packages_dir)}"
    )
    console.print()
    console.print("[bold]Image:[/bold]")
    console.print(f"  Image size (MiB):    {settings.image_size_mib}")
    console.print(f"  Boot size (MiB):     {settings.boot_size_mib}")
    console.print(f"  Default environment: {settings.default_environment}")
    console.print(f"  Auxiliary packages:  {' '.join(settings.aux_packages)}")
    console.print()
    console.print("[bold]Download:[/bold]")
    console.print(f"  Mirror URL:          {settings.mirror_url}")
    console.print(f"  Checksum URL:        {settings.checksum_url}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Build user:          {settings.build_user or '(none)'}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  Verify on umount:    {settings.verify_recovered_layout}")


@app.command()
def profiles(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List available platforms and environments."""
    settings = _settings(ctx)
    registry = _registry(settings)
    platforms = list(registry.list_platforms())
    environments = list(registry.list_environments())

    if json_output:
        console.print(
            json.dumps(
                {
                    "platforms": platforms,
                    "environments": environments,
                    "default_environment": settings.default_environment,
                },
                indent=2,
            ),
            soft_wrap=True,
        )
        return

    for title, ids, resolve in (
        ("Platforms", platforms, registry.resolve_platform),
        ("Environments", environments, registry.resolve_environment),
    ):
        console.print(f"[bold]{title}:[/bold]")
        for profile_id in ids:
            try:
                description = resolve(profile_id).description or ""
            except ImageGenError as e:
                description = f"[red]{e.message}[/red]"
            console.print(f"  [green]{profile_id}[/green]  {description}")
        console.print()


def run() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "print_usage", "run"]
