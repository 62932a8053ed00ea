"""Thin CLI wrapper for kbuild_pipeline.

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
from rich.markup import escape

from kbuild_pipeline import __version__
from kbuild_pipeline.config import (
    Settings,
    get_settings,
    load_run_file,
    print_settings_json,
    resolve_settings,
)
from kbuild_pipeline.errors import PipelineError
from kbuild_pipeline.types import TargetState

app = typer.Typer(
    name="kbuild",
    help="Kernel build pipeline - build, package and publish kernels per target",
    no_args_is_help=True,
)
console = Console()


def configure_logging(level: int = logging.INFO) -> None:
    """Configure application logging with Rich handler.

    Args:
        level: Logging severity threshold.
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[
            RichHandler(
                console=Console(stderr=True),
                rich_tracebacks=True,
                show_path=False,
            )
        ],
        force=True,
    )


def _fail(error: PipelineError, json_output: bool) -> typer.Exit:
    if json_output:
        typer.echo(json.dumps({"error": error.to_dict()}, indent=2))
    else:
        console.print(f"[red]Error ({error.code}): {escape(str(error))}[/red]")
    return typer.Exit(code=1)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"kbuild-pipeline version {__version__}")
        raise typer.Exit()


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
    """Kernel build pipeline - build, package and publish kernels per target."""


@app.command()
def run(
    kernel_repo: Annotated[
        str,
        typer.Argument(help="Local kernel tree or git URL"),
    ],
    targets: Annotated[
        list[str] | None,
        typer.Option("--target", "-t", help="Target as <arch>,<flavour> (repeatable)"),
    ] = None,
    branch: Annotated[
        str | None,
        typer.Option("--branch", "-b", help="Kernel branch, also used in upload paths"),
    ] = None,
    build_root: Annotated[
        Path | None,
        typer.Option("--build-root", help="Scratch workspace root"),
    ] = None,
    astore_root: Annotated[
        str | None,
        typer.Option("--astore-root", help="Artifact-store root path"),
    ] = None,
    label: Annotated[
        str | None,
        typer.Option("--label", "-l", help="Label used in manifest variable names"),
    ] = None,
    clean: Annotated[
        bool | None,
        typer.Option(
            "--clean/--preserve",
            help="Discard the workspace first, or reuse it",
        ),
    ] = None,
    mode: Annotated[
        str | None,
        typer.Option("--mode", "-m", help="fail-fast (default) or best-effort"),
    ] = None,
    suffix: Annotated[
        str | None,
        typer.Option("--suffix", help="Version suffix, e.g. -custom"),
    ] = None,
    jobs: Annotated[
        int | None,
        typer.Option("--jobs", "-j", help="Targets built in parallel"),
    ] = None,
    config_file: Annotated[
        Path | None,
        typer.Option("--config-file", "-c", help="YAML run file"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Debug logging"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build, package and publish kernels for one or more targets.

    Every target is validated before anything is built. With
    --mode=fail-fast the first failure stops the remaining targets; with
    --mode=best-effort all targets run and the manifest is aggregated from
    the ones that published.
    """
    from kbuild_pipeline.builds.service import PipelineOrchestrator

    try:
        run_file: dict[str, Any] = load_run_file(config_file) if config_file else {}
        settings = resolve_settings(
            overrides={
                "branch": branch,
                "build_root": build_root,
                "astore_root": astore_root,
                "label": label,
                "clean": clean,
                "run_mode": mode,
                "version_suffix": suffix,
                "max_parallel_targets": jobs,
            },
            run_file=run_file,
        )
    except PipelineError as e:
        raise _fail(e, json_output) from None

    level = logging.DEBUG if verbose else getattr(logging, settings.log_level)
    configure_logging(level)

    target_specs = targets or run_file.get("targets") or []

    if not json_output:
        console.print(f"[blue]Building {len(target_specs)} target(s) from {kernel_repo}...[/blue]")

    orchestrator = PipelineOrchestrator(settings, kernel_repo, target_specs)
    try:
        result = orchestrator.run()
    except PipelineError as e:
        raise _fail(e, json_output) from None

    if json_output:
        typer.echo(result.model_dump_json(indent=2))
    else:
        console.print()
        console.print("[bold]Run Results:[/bold]")
        console.print(f"  Run state: {result.run_state.value}")
        console.print(f"  [green]Published: {result.succeeded}[/green]")
        if result.failed > 0:
            console.print(f"  [red]Failed: {result.failed}[/red]")
        if result.manifest_path:
            console.print(f"  Manifest: {result.manifest_path}")

        console.print()
        console.print("[bold]Per-Target Results:[/bold]")
        for t in result.targets:
            if t.state == TargetState.PUBLISHED:
                console.print(f"  [green]✓ {t.target}[/green] {t.version}")
                for r in t.records:
                    console.print(f"      {r.storage_path}")
            else:
                console.print(f"  [red]✗ {t.target}[/red] {t.version}")
                if t.error:
                    stage = f" [{t.failed_stage}]" if t.failed_stage else ""
                    console.print(f"      Error{escape(stage)}: {escape(t.error)}")

    if not result.success:
        raise typer.Exit(code=1)


@app.command()
def version(
    kernel_tree: Annotated[
        Path,
        typer.Argument(help="Kernel source tree"),
    ],
    flavour: Annotated[
        str,
        typer.Option("--flavour", "-f", help="Kernel flavour"),
    ] = "generic",
    suffix: Annotated[
        str,
        typer.Option("--suffix", help="Version suffix"),
    ] = "",
    changelog_path: Annotated[
        str | None,
        typer.Option("--changelog-path", help="Changelog path inside the tree"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Print the kernel version a build would use."""
    from kbuild_pipeline.version import read_changelog, resolve

    path = changelog_path or get_settings().changelog_path
    try:
        kver = resolve(read_changelog(kernel_tree, path), suffix, flavour)
    except PipelineError as e:
        raise _fail(e, json_output) from None

    if json_output:
        typer.echo(
            json.dumps(
                {
                    "version": str(kver),
                    "base": kver.base,
                    "abi": kver.abi,
                    "suffix": kver.suffix,
                    "flavour": kver.flavour,
                    "bazel_safe": kver.bazel_safe,
                },
                indent=2,
            )
        )
    else:
        console.print(str(kver))


@app.command()
def aggregate(
    build_root: Annotated[
        Path | None,
        typer.Option("--build-root", help="Scratch workspace root"),
    ] = None,
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Manifest path (default: in build root)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Rebuild the manifest from the fragments in a workspace."""
    from kbuild_pipeline.builds.manifest import aggregate as merge_fragments
    from kbuild_pipeline.builds.manifest import load_fragments, write_manifest
    from kbuild_pipeline.builds.service import MANIFEST_FILE_NAME
    from kbuild_pipeline.builds.workspace import META_DIR_NAME

    try:
        settings = resolve_settings(overrides={"build_root": build_root})
        root = settings.build_root
        manifest = merge_fragments(load_fragments(root / META_DIR_NAME))
        path = write_manifest(manifest, output or root / MANIFEST_FILE_NAME)
    except PipelineError as e:
        raise _fail(e, json_output) from None

    if json_output:
        typer.echo(
            json.dumps(
                {"manifest_path": str(path), "variables": dict(manifest.iter_lines())},
                indent=2,
            )
        )
    else:
        console.print(f"[green]Wrote manifest with {len(manifest)} entries to {path}[/green]")


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings: Settings = get_settings()
    if json_output:
        typer.echo(print_settings_json(settings))
    else:
        store_dir = str(settings.local_store_dir) if settings.local_store_dir else "(in build root)"
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Build root:          {settings.build_root}")
        console.print(f"  Changelog path:      {settings.changelog_path}")
        console.print()
        console.print("[bold]Publishing:[/bold]")
        console.print(f"  Artifact store:      {settings.artifact_store}")
        console.print(f"  Astore root:         {settings.astore_root}")
        console.print(f"  Branch:              {settings.branch}")
        console.print(f"  Label:               {settings.label}")
        console.print(f"  Upload command:      {settings.astore_command}", markup=False)
        console.print(f"  Local store dir:     {store_dir}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Run mode:            {settings.run_mode}")
        console.print(f"  Clean workspace:     {settings.clean}")
        console.print(f"  Allow reuse:         {settings.reuse}")
        console.print(f"  Version suffix:      {settings.version_suffix!r}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print()
        console.print("[bold]Concurrency:[/bold]")
        console.print(f"  Max parallel targets: {settings.max_parallel_targets}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Build timeout:       {settings.build_timeout}")
        console.print(f"  Upload timeout:      {settings.upload_timeout}")
        console.print(f"  Lock timeout:        {settings.lock_timeout or '(wait)'}")


@app.command()
def targets(
    specs: Annotated[
        list[str] | None,
        typer.Argument(help="Target specs to validate"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List supported architectures, or validate target specs."""
    from kbuild_pipeline.targets import Arch, parse_targets

    if specs:
        try:
            parsed = parse_targets(specs)
        except PipelineError as e:
            raise _fail(e, json_output) from None
        if json_output:
            typer.echo(
                json.dumps(
                    [{"name": t.name, "arch": t.arch.value, "flavour": t.flavour} for t in parsed],
                    indent=2,
                )
            )
        else:
            for t in parsed:
                console.print(f"[green]✓ {t}[/green] -> {t.name}")
        return

    if json_output:
        typer.echo(
            json.dumps(
                [
                    {
                        "arch": a.value,
                        "image_target": a.toolchain.image_target,
                        "make_args": list(a.toolchain.make_args),
                    }
                    for a in Arch
                ],
                indent=2,
            )
        )
    else:
        console.print("[bold]Supported architectures:[/bold]")
        for a in Arch:
            args = " ".join(a.toolchain.make_args) or "(native)"
            console.print(f"  {a.value:<8} {a.toolchain.image_target:<8} {args}")


if __name__ == "__main__":
    app()
