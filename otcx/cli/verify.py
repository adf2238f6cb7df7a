"""
otcx/cli/verify.py

otcx verify-report: integrity check of an exported JSON audit report.

Usage:
    otcx verify-report report.json                 Human output (default)
    otcx verify-report report.json --format json   Machine-readable JSON
    otcx verify-report report.json --quiet         Exit code only
    otcx verify-report report.json --expect-key <hex>

Exit codes (POSIX-standard, shell-scriptable):
    0  Digest matches (and signature valid, if present)
    1  Report tampered, unsigned when a key was expected, or wrong signer
    2  Error (file missing, unreadable)

CI one-liner:
    otcx verify-report report.json --quiet && echo "clean" || echo "TAMPERED"
"""

import json
import sys
from pathlib import Path
from typing import Optional

import click

from otcx.cli.common import EXIT_FAILED, EXIT_OK, EXIT_USAGE, _Color, emit_error
from otcx.core.exceptions import ReportIntegrityError
from otcx.settlement.export import verify_report


def _row_ok(label: str, value: str) -> str:
    return f"  {_Color.green('✓')}  {label:<12} {value}"


def _row_fail(label: str, value: str) -> str:
    return f"  {_Color.red('✗')}  {label:<12} {value}"


@click.command(name="verify-report")
@click.argument("report", type=click.Path(exists=False, path_type=Path))
@click.option(
    "--format", "fmt",
    type    = click.Choice(["human", "json"], case_sensitive=False),
    default = "human",
    help    = "Output format.",
)
@click.option(
    "--expect-key",
    default = None,
    metavar = "HEX",
    help    = "Require a signature by this Ed25519 public key.",
)
@click.option(
    "--quiet", "-q",
    is_flag = True,
    default = False,
    help    = "No output. Exit code only.",
)
def verify_command(report: Path, fmt: str, expect_key: Optional[str], quiet: bool) -> None:
    """
    Verify an exported audit report's digest and signature.
    """
    fmt = fmt.lower()
    if not report.exists():
        if not quiet:
            emit_error(f"report not found: {report}", fmt)
        sys.exit(EXIT_USAGE)

    try:
        result = verify_report(report)
    except ReportIntegrityError as e:
        if not quiet:
            if fmt == "json":
                click.echo(json.dumps({"valid": False, "error": str(e)}, indent=2))
            else:
                click.echo(_row_fail("Report", str(e)))
        sys.exit(EXIT_FAILED)

    problem = None
    if expect_key is not None:
        if not result["signed"]:
            problem = "report is not signed"
        elif result["public_key"] != expect_key.lower():
            problem = f"signed by {result['public_key']}, expected {expect_key.lower()}"

    if quiet:
        sys.exit(EXIT_FAILED if problem else EXIT_OK)

    if fmt == "json":
        click.echo(json.dumps({"valid": problem is None, "error": problem, **result}, indent=2))
    else:
        click.echo(_row_ok("Digest", result["digest"]))
        click.echo(_row_ok("Rows", str(result["rows"])))
        if result["signed"]:
            click.echo(_row_ok("Signature", f"ed25519 {result['public_key']}"))
        else:
            click.echo(_Color.dim("  -  Signature    unsigned"))
        if problem:
            click.echo(_row_fail("Signer", problem))

    sys.exit(EXIT_FAILED if problem else EXIT_OK)
