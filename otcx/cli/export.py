"""
otcx/cli/export.py

otcx export: audit export of a project's submitted proofs.

Usage:
    otcx export grass --output proofs.csv
    otcx export grass --format xlsx --output proofs.xlsx
    otcx keygen operator.pem
    otcx export grass --format json --output report.json --sign-key operator.pem

The JSON report carries a canonical digest of its rows and, with
--sign-key, an Ed25519 signature. Check it with `otcx verify-report`.
"""

from pathlib import Path
from typing import Optional

import click

from otcx.cli.common import _Color, emit_missing, pass_state, run_async, run_command
from otcx.core.crypto import ReportSigningKey
from otcx.settlement.export import (
    build_report,
    export_rows,
    write_csv,
    write_report,
    write_xlsx,
)


@click.command("export")
@click.argument("project_ref", metavar="PROJECT")
@click.option(
    "--format", "fmt",
    type         = click.Choice(["csv", "xlsx", "json"]),
    default      = "csv",
    show_default = True,
    help         = "Export format.",
)
@click.option(
    "--output",
    type     = click.Path(dir_okay=False, path_type=Path),
    required = True,
    metavar  = "FILE",
    help     = "Where to write the export.",
)
@click.option(
    "--sign-key",
    type    = click.Path(exists=True, dir_okay=False, path_type=Path),
    default = None,
    metavar = "PEM",
    help    = "Ed25519 private key used to sign a JSON report.",
)
@pass_state
def export_command(
    state,
    project_ref: str,
    fmt:         str,
    output:      Path,
    sign_key:    Optional[Path],
) -> None:
    """
    Export every submitted proof of one project, one row per order.
    """
    if sign_key is not None and fmt != "json":
        raise click.UsageError("--sign-key applies to --format json only")

    def body() -> None:
        runtime = state.runtime()
        project = run_async(runtime.resolve_project(project_ref))
        view = run_async(runtime.review(project.project_id))
        explorer = runtime.session_for(project).explorer_url

        emit_missing(view.missing)
        rows = export_rows(view.pending, explorer)

        if fmt == "csv":
            write_csv(rows, output)
        elif fmt == "xlsx":
            write_xlsx(rows, output, title=project.slug or "Proofs")
        else:
            key = ReportSigningKey.load(sign_key) if sign_key is not None else None
            write_report(build_report(rows, project.project_id, state.clock(), key), output)

        click.echo(_Color.green(f"exported {len(rows)} row(s) to {output}"))

    run_command("human", body)


@click.command("keygen")
@click.argument("output", type=click.Path(dir_okay=False, path_type=Path), metavar="PEM")
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing key file.")
def keygen_command(output: Path, force: bool) -> None:
    """Generate an Ed25519 signing key for JSON reports."""
    if output.exists() and not force:
        raise click.UsageError(f"{output} exists; pass --force to overwrite")
    key = ReportSigningKey.generate()
    key.save(output)
    click.echo(f"public key {key.public_key_hex}")
