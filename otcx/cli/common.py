"""
otcx/cli/common.py

Shared CLI plumbing: runtime construction, output helpers, exit codes.

Exit codes (POSIX-standard, shell-scriptable):
    0  OK
    1  Operation failed (declined mutation, blocked action, bad report)
    2  Usage or configuration error
"""

import asyncio
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

import click

from otcx.config import OtcxConfig
from otcx.core.exceptions import (
    ConfigError,
    InvariantViolation,
    MutationRejected,
    OtcxError,
)
from otcx.core.models import AMOUNT_DECIMALS, PRICE_DECIMALS
from otcx.core.time import Clock, now_unix
from otcx.ledger.memory import InMemoryLedger
from otcx.runtime.context import RuntimeContext
from otcx.settlement.conversion import format_fixed

EXIT_OK     = 0
EXIT_FAILED = 1
EXIT_USAGE  = 2


# ── ANSI color ────────────────────────────────────────────────

class _Color:
    """
    Minimal ANSI color wrapper.
    Auto-disables when not a TTY or --no-color is passed.
    """
    _on: bool = True

    @classmethod
    def configure(cls, enabled: bool) -> None:
        cls._on = enabled and sys.stdout.isatty()

    @classmethod
    def green(cls, s: str) -> str:
        return f"\033[32m{s}\033[0m" if cls._on else s

    @classmethod
    def red(cls, s: str) -> str:
        return f"\033[31m{s}\033[0m" if cls._on else s

    @classmethod
    def yellow(cls, s: str) -> str:
        return f"\033[33m{s}\033[0m" if cls._on else s

    @classmethod
    def bold(cls, s: str) -> str:
        return f"\033[1m{s}\033[0m" if cls._on else s

    @classmethod
    def dim(cls, s: str) -> str:
        return f"\033[2m{s}\033[0m" if cls._on else s


def emit_error(msg: str, fmt: str = "human") -> None:
    """Emit an error in the requested format. Never raises."""
    if fmt == "json":
        click.echo(json.dumps({"error": msg}))
    else:
        click.echo(_Color.red(f"ERROR: {msg}"), err=True)


def emit_missing(items) -> None:
    for item in items:
        click.echo(_Color.yellow(f"could not load {item}"), err=True)


def price(value: Optional[int]) -> str:
    return "-" if value is None else format_fixed(value, PRICE_DECIMALS)


def amount(value: Optional[int]) -> str:
    return "-" if value is None else format_fixed(value, AMOUNT_DECIMALS)


# ── Runtime ───────────────────────────────────────────────────

@dataclass
class CliState:
    """Carried on click's ctx.obj from the root group to every command."""

    config:     OtcxConfig
    state_path: Optional[Path]
    clock:      Clock = now_unix
    _runtime:   Optional[RuntimeContext] = None
    _ledger:    Optional[InMemoryLedger] = None

    def runtime(self) -> RuntimeContext:
        if self._runtime is None:
            if self.state_path is None:
                raise ConfigError("no ledger state file; pass --state or set OTCX_STATE")
            self._ledger = InMemoryLedger.from_yaml(self.state_path, clock=self.clock)
            self._runtime = RuntimeContext.from_config(
                self.config, ledger=self._ledger, clock=self.clock
            )
        return self._runtime

    def save(self) -> None:
        """Persist ledger state after mutations."""
        if self._ledger is not None and self.state_path is not None:
            self._ledger.save(self.state_path)


def run_command(fmt: str, body: Callable[[], Any]) -> Any:
    """
    Run a command body, mapping otcx errors onto exit codes.

    Mutation and invariant failures print what failed and why, then exit 1.
    Configuration errors exit 2.
    """
    try:
        return body()
    except ConfigError as e:
        emit_error(str(e), fmt)
        sys.exit(EXIT_USAGE)
    except (MutationRejected, InvariantViolation) as e:
        emit_error(str(e), fmt)
        sys.exit(EXIT_FAILED)
    except OtcxError as e:
        emit_error(str(e), fmt)
        sys.exit(EXIT_FAILED)


def run_async(coro) -> Any:
    return asyncio.run(coro)


pass_state = click.make_pass_decorator(CliState)
