from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from .config import ConfigError, ImageForgeConfig, find_config, load_config
from .errors import CollisionError, ImageForgeError, InputValidationError
from .reporting import (
    DEFAULT_BLUR_SIZE,
    DEFAULT_FORMATS,
    DEFAULT_OUTPUT,
    DEFAULT_QUALITY,
    RunImageReport,
    RunReport,
    default_concurrency,
    format_size,
    sanitize_for_terminal,
    savings_percent,
)
from .responsive import parse_widths
from .runner import RunOptions, RunResult, run_imageforge
from .schema import SUPPORTED_FORMATS, Manifest, ProcessOptions
from .version import __version__

app = typer.Typer(add_completion=False, no_args_is_help=True)
console = Console()
err_console = Console(stderr=True)

CACHE_MODES = ("on", "read-only", "off")

STATUS_STYLES = {
    "processed": "[green]✓[/green]",
    "cached": "[cyan]○[/cyan]",
    "failed": "[red]✗[/red]",
    "needs-processing": "[yellow]![/yellow]",
}


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False, markup=False)],
        force=True,
    )


def parse_formats(raw: str) -> tuple[str, ...]:
    formats: list[str] = []
    for token in raw.split(","):
        fmt = token.strip().lower()
        if not fmt:
            raise InputValidationError(f'Invalid formats: empty value in "{raw}".')
        if fmt not in SUPPORTED_FORMATS:
            raise InputValidationError(
                f'Unsupported format "{fmt}". Supported: {", ".join(SUPPORTED_FORMATS)}.'
            )
        if fmt not in formats:
            formats.append(fmt)
    return tuple(formats)


def _load_project_config(config_path: Optional[Path]) -> ImageForgeConfig:
    if config_path is not None:
        return load_config(config_path)
    found = find_config()
    if found is None:
        return ImageForgeConfig()
    logging.getLogger(__name__).debug(f"Using config {found}")
    return load_config(found)


def _print_image(report: RunImageReport) -> None:
    name = escape(sanitize_for_terminal(report.file))
    status = STATUS_STYLES[report.status]
    if report.status == "failed":
        console.print(f"  {status} {name}: {escape(sanitize_for_terminal(report.reason))}", highlight=False)
    elif report.status == "needs-processing":
        console.print(f"  {status} {name} [dim](needs processing)[/dim]", highlight=False)
    elif report.status == "cached":
        console.print(f"  {status} {name} [dim](cached)[/dim]", highlight=False)
    else:
        console.print(
            f"  {status} {name} {format_size(report.original_size)} -> {format_size(report.processed_size)}",
            highlight=False,
        )


def _print_summary(report: RunReport) -> None:
    s = report.summary
    table = Table(title="ImageForge")
    table.add_column("Processed", style="green")
    table.add_column("Cached", style="cyan")
    table.add_column("Needs run", style="yellow")
    table.add_column("Failed", style="red")
    table.add_column("Original")
    table.add_column("Output")
    table.add_column("Time")
    table.add_row(
        str(s.processed),
        str(s.cached),
        str(s.needs_processing),
        str(s.failed),
        format_size(s.total_original_size),
        format_size(s.total_processed_size),
        f"{s.duration_ms / 1000:.2f}s",
    )
    console.print(table)

    saved = savings_percent(s.total_original_size, s.total_processed_size)
    if s.processed and saved is not None:
        console.print(f"Saved {saved}% on processed images")


@app.command("run")
def run_cmd(
    directory: Path = typer.Argument(..., help="Directory containing source images"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Manifest path (default imageforge.json)"),
    formats: Optional[str] = typer.Option(None, "--formats", "-f", help="Comma-separated formats: webp,avif"),
    quality: Optional[int] = typer.Option(None, "--quality", "-q", help="Encoder quality 1-100"),
    blur: Optional[bool] = typer.Option(None, "--blur/--no-blur", help="Generate blur placeholders"),
    blur_size: Optional[int] = typer.Option(None, "--blur-size", help="Blur placeholder size 1-256"),
    widths: Optional[str] = typer.Option(None, "--widths", help="Comma-separated responsive widths"),
    cache: Optional[str] = typer.Option(None, "--cache", help="Cache mode: on, read-only or off"),
    force_overwrite: Optional[bool] = typer.Option(
        None, "--force-overwrite/--no-force-overwrite", help="Overwrite outputs not owned by imageforge"
    ),
    check: bool = typer.Option(False, "--check", help="Exit 1 if any image needs processing"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report what would be processed"),
    out_dir: Optional[Path] = typer.Option(None, "--out-dir", help="Directory to write outputs to"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", help="Parallel workers"),
    include: Optional[list[str]] = typer.Option(None, "--include", help="Only process matching paths"),
    exclude: Optional[list[str]] = typer.Option(None, "--exclude", help="Skip matching paths"),
    config: Optional[Path] = typer.Option(None, "--config", help="Config file (imageforge.toml or .yaml)"),
    as_json: bool = typer.Option(False, "--json", help="Print the run report as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    quiet: bool = typer.Option(False, "--quiet"),
):
    """Convert images to modern formats and write a manifest."""
    configure_logging(verbose)

    try:
        cfg = _load_project_config(config)
        options = _resolve_options(
            cfg,
            directory=directory,
            output=output,
            formats=formats,
            quality=quality,
            blur=blur,
            blur_size=blur_size,
            widths=widths,
            cache=cache,
            force_overwrite=force_overwrite,
            check=check,
            dry_run=dry_run,
            out_dir=out_dir,
            concurrency=concurrency,
            include=include,
            exclude=exclude,
        )
        show_progress = not (quiet or as_json)
        if show_progress:
            mode = "Checking" if check else "Dry run" if dry_run else "Processing"
            console.print(f"[bold]{mode}[/bold] {escape(sanitize_for_terminal(str(directory)))}", highlight=False)
        result = run_imageforge(options, on_image=_print_image if show_progress else None)
    except ConfigError as e:
        err_console.print(f"[bold red]Config error:[/bold red] {escape(sanitize_for_terminal(str(e)))}", highlight=False)
        raise typer.Exit(code=2) from e
    except CollisionError as e:
        err_console.print(f"[bold red]{escape(sanitize_for_terminal(str(e)))}[/bold red]", highlight=False)
        for line in e.details:
            err_console.print(f"  • {escape(sanitize_for_terminal(line))}", highlight=False)
        raise typer.Exit(code=2) from e
    except ImageForgeError as e:
        err_console.print(f"[bold red]Error:[/bold red] {escape(sanitize_for_terminal(str(e)))}", highlight=False)
        raise typer.Exit(code=2) from e

    _finish(result, options, as_json=as_json, quiet=quiet)


def _resolve_options(
    cfg: ImageForgeConfig,
    *,
    directory: Path,
    output: Optional[Path],
    formats: Optional[str],
    quality: Optional[int],
    blur: Optional[bool],
    blur_size: Optional[int],
    widths: Optional[str],
    cache: Optional[str],
    force_overwrite: Optional[bool],
    check: bool,
    dry_run: bool,
    out_dir: Optional[Path],
    concurrency: Optional[int],
    include: Optional[list[str]],
    exclude: Optional[list[str]],
) -> RunOptions:
    """Merge CLI flags over config values over built-in defaults."""
    cache_mode = cache if cache is not None else cfg.cache or "on"
    if cache_mode not in CACHE_MODES:
        raise InputValidationError(f'Invalid cache mode "{cache_mode}". Expected one of: {", ".join(CACHE_MODES)}.')

    if formats is not None:
        fmt_tuple = parse_formats(formats)
    elif cfg.formats:
        fmt_tuple = tuple(dict.fromkeys(cfg.formats))
    else:
        fmt_tuple = DEFAULT_FORMATS

    width_list = parse_widths(widths) if widths is not None else cfg.widths

    try:
        process = ProcessOptions(
            formats=fmt_tuple,
            quality=quality if quality is not None else cfg.quality or DEFAULT_QUALITY,
            blur=blur if blur is not None else cfg.blur if cfg.blur is not None else True,
            blur_size=blur_size if blur_size is not None else cfg.blur_size or DEFAULT_BLUR_SIZE,
            widths=tuple(width_list) if width_list else None,
        )
    except ValidationError as e:
        raise InputValidationError(_first_error(e)) from e

    workers = concurrency if concurrency is not None else cfg.concurrency or default_concurrency()
    if workers < 1:
        raise InputValidationError(f"Invalid concurrency {workers}: must be at least 1.")

    resolved_out_dir = out_dir if out_dir is not None else Path(cfg.out_dir) if cfg.out_dir else None
    return RunOptions(
        input_dir=directory.resolve(),
        process=process,
        output=(output if output is not None else Path(cfg.output or DEFAULT_OUTPUT)).resolve(),
        out_dir=resolved_out_dir.resolve() if resolved_out_dir is not None else None,
        cache=cache_mode,
        force_overwrite=force_overwrite if force_overwrite is not None else bool(cfg.force_overwrite),
        check=check,
        dry_run=dry_run,
        concurrency=workers,
        include=tuple(include) if include else tuple(cfg.include),
        exclude=tuple(exclude) if exclude else tuple(cfg.exclude),
        source_identity=cfg.source_identity or "content",
    )


def _first_error(e: ValidationError) -> str:
    err = e.errors()[0]
    field = ".".join(str(p) for p in err["loc"])
    return f"Invalid {field}: {err['msg']}"


def _finish(result: RunResult, options: RunOptions, as_json: bool, quiet: bool) -> None:
    report = result.report
    if as_json:
        typer.echo(json.dumps(report.to_dict(), indent=2))
        raise typer.Exit(code=result.exit_code)

    if not quiet:
        _print_summary(report)
        for err in report.errors:
            if err.file is None:
                console.print(f"[red]{err.code}[/red] {escape(sanitize_for_terminal(err.message))}", highlight=False)
        if result.manifest_path is not None:
            console.print(f"Manifest: {escape(report.manifest_path)}", highlight=False)

    if options.check and report.summary.needs_processing:
        err_console.print(
            f"[yellow]{report.summary.needs_processing} image(s) need processing.[/yellow] Run:",
            highlight=False,
        )
        err_console.print(sanitize_for_terminal(report.rerun_command), markup=False, highlight=False, soft_wrap=True)
    elif options.check and result.exit_code == 0 and not quiet:
        console.print("[bold green]All images up to date[/bold green]")

    raise typer.Exit(code=result.exit_code)


@app.command("export-jsonschema")
def export_jsonschema(out_dir: Path = typer.Option(Path("docs/jsonschema"), "--out-dir")):
    """Write the manifest JSON schema."""
    out_dir.mkdir(parents=True, exist_ok=True)
    schema = Manifest.model_json_schema(by_alias=True)
    out_path = out_dir / "imageforge-manifest.schema.json"
    out_path.write_text(json.dumps(schema, indent=2), encoding="utf-8")
    console.print(f"Wrote {out_path}")


@app.command("version")
def version_cmd():
    console.print(__version__)


if __name__ == "__main__":
    app()
