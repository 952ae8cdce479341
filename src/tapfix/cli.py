from __future__ import annotations

import json
from pathlib import Path
from typing import List, Optional

import typer

from tapfix.commands import execute_rewrite
from tapfix.rewrite.engine import render_diff
from tapfix.rewrite.model import RewritePlan, SiteStatus

app = typer.Typer(add_completion=False)


def _rewrite_payload(
    *,
    paths: List[Path] | None,
    write: bool,
    target_method: Optional[str],
    replacement_method: Optional[str],
    receiver_types: List[str],
    strict_receiver: Optional[bool],
    error_type: Optional[str],
    element_type_fallback: Optional[str],
    exclude: List[str],
) -> dict:
    # Relative paths resolve against --root in the engine.
    targets = [str(path) for path in paths] if paths else ["."]
    return {
        "paths": targets,
        "write": write,
        "target_method": target_method,
        "replacement_method": replacement_method,
        "receiver_types": receiver_types or None,
        "strict_receiver": strict_receiver,
        "error_type": error_type,
        "element_type_fallback": element_type_fallback,
        "exclude": exclude or None,
    }


def _emit_json(result: dict, output_path: Optional[Path]) -> None:
    output = json.dumps(result, indent=2, sort_keys=True)
    if output_path is None:
        typer.echo(output)
    else:
        output_path.write_text(output + "\n", encoding="utf-8")


def _emit_diagnostics(plan: RewritePlan) -> None:
    for site in plan.sites:
        if site.status is SiteStatus.REWRITTEN:
            continue
        typer.echo(
            f"{site.path}:{site.line}:{site.column}: {site.status.value}: {site.reason}",
            err=True,
        )
    for warning in plan.warnings:
        typer.echo(f"warning: {warning}", err=True)
    for error in plan.errors:
        typer.echo(f"error: {error}", err=True)


@app.command("rewrite")
def rewrite(
    paths: List[Path] = typer.Argument(None, help="Files or directories to rewrite."),
    root: Path = typer.Option(Path("."), "--root"),
    config: Optional[Path] = typer.Option(None, "--config"),
    write: bool = typer.Option(False, "--write", help="Write rewritten files in place."),
    check: bool = typer.Option(
        False, "--check", help="Exit with code 1 when any rewrite is pending."
    ),
    json_output: bool = typer.Option(False, "--json", help="Print the plan as JSON."),
    output_path: Optional[Path] = typer.Option(
        None, "--output", help="Write the JSON plan to a file."
    ),
    target_method: Optional[str] = typer.Option(None, "--target-method"),
    replacement_method: Optional[str] = typer.Option(None, "--replacement-method"),
    receiver_types: List[str] = typer.Option([], "--receiver-type"),
    strict_receiver: Optional[bool] = typer.Option(
        None, "--strict-receiver/--no-strict-receiver"
    ),
    error_type: Optional[str] = typer.Option(None, "--error-type"),
    element_type_fallback: Optional[str] = typer.Option(
        None, "--element-type-fallback"
    ),
    exclude: List[str] = typer.Option([], "--exclude"),
) -> None:
    """Rewrite completion callbacks into lifecycle listeners."""
    if write and check:
        raise typer.BadParameter("--write and --check are mutually exclusive.")
    payload = _rewrite_payload(
        paths=paths,
        write=write,
        target_method=target_method,
        replacement_method=replacement_method,
        receiver_types=receiver_types,
        strict_receiver=strict_receiver,
        error_type=error_type,
        element_type_fallback=element_type_fallback,
        exclude=exclude,
    )
    plan, result = execute_rewrite(payload, root=root, config_path=config)
    if json_output or output_path is not None:
        _emit_json(result, output_path)
    else:
        for file_rewrite in plan.files:
            if not file_rewrite.changed:
                continue
            if write:
                typer.echo(f"Rewrote {file_rewrite.path}")
            else:
                typer.echo(render_diff(file_rewrite), nl=False)
    _emit_diagnostics(plan)
    if plan.errors:
        raise typer.Exit(code=1)
    if check and plan.edits:
        typer.echo(f"{len(plan.edits)} file(s) would be rewritten.", err=True)
        raise typer.Exit(code=1)


@app.command("classify")
def classify(
    paths: List[Path] = typer.Argument(None, help="Files or directories to scan."),
    root: Path = typer.Option(Path("."), "--root"),
    config: Optional[Path] = typer.Option(None, "--config"),
    json_output: bool = typer.Option(False, "--json", help="Print the sites as JSON."),
    target_method: Optional[str] = typer.Option(None, "--target-method"),
    receiver_types: List[str] = typer.Option([], "--receiver-type"),
    strict_receiver: Optional[bool] = typer.Option(
        None, "--strict-receiver/--no-strict-receiver"
    ),
    element_type_fallback: Optional[str] = typer.Option(
        None, "--element-type-fallback"
    ),
) -> None:
    """Show how each callback body splits into lifecycle buckets."""
    payload = _rewrite_payload(
        paths=paths,
        write=False,
        target_method=target_method,
        replacement_method=None,
        receiver_types=receiver_types,
        strict_receiver=strict_receiver,
        error_type=None,
        element_type_fallback=element_type_fallback,
        exclude=[],
    )
    plan, result = execute_rewrite(payload, root=root, config_path=config)
    if json_output:
        _emit_json({"sites": result["sites"], "errors": result["errors"]}, None)
    else:
        for site in plan.sites:
            header = f"{site.path}:{site.line}:{site.column} {site.callback} [{site.status.value}]"
            if site.status is not SiteStatus.REWRITTEN:
                typer.echo(f"{header} {site.reason}")
                continue
            typer.echo(f"{header} -> {site.listener}")
            for bucket in ("value", "error", "common"):
                statements = site.buckets.get(bucket, [])
                typer.echo(f"  {bucket}:")
                for statement in statements:
                    for line in statement.splitlines():
                        typer.echo(f"    {line}")
        for error in plan.errors:
            typer.echo(f"error: {error}", err=True)
    if plan.errors:
        raise typer.Exit(code=1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
