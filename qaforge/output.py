"""
Rich Output Utilities
=====================

Unified console output for QA Forge using the Rich library.
Every module reports through the helpers here so server logs, CLI output
and agent line echo share one themed console.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from typing import Optional, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme


# =============================================================================
# Color Scheme & Theme
# =============================================================================

@dataclass(frozen=True)
class ForgeColors:
    """QA Forge color palette using hex for truecolor terminal support."""
    ink: str = "#E6E6E6"       # primary text
    dim: str = "#9AA4B2"       # muted text
    forge: str = "#F59E0B"     # warm accent
    accent: str = "#22D3EE"    # cool accent
    steel: str = "#94A3B8"     # secondary accent
    ok: str = "#22C55E"        # success green
    warn: str = "#FBBF24"      # warning yellow
    err: str = "#EF4444"       # error red


def forge_theme(colors: ForgeColors = ForgeColors()) -> Theme:
    """
    Rich Theme for QA Forge.

    Style names are semantic so you can use them everywhere:
      console.print("...", style="qa.ok")
    """
    return Theme(
        {
            "qa.accent": f"bold {colors.forge}",
            "qa.muted": f"{colors.dim}",
            "qa.text": f"{colors.ink}",

            # Status
            "qa.ok": f"bold {colors.ok}",
            "qa.warn": f"bold {colors.warn}",
            "qa.err": f"bold {colors.err}",
            "qa.info": f"{colors.accent}",

            # Data display
            "qa.key": f"{colors.steel}",
            "qa.path": f"{colors.accent}",
            "qa.timestamp": f"{colors.dim}",

            # Event kinds
            "qa.kind.tool_use": f"bold {colors.forge}",
            "qa.kind.assistant": f"{colors.ink}",
            "qa.kind.error": f"bold {colors.err}",
            "qa.kind.system": f"{colors.dim}",
            "qa.kind.result": f"bold {colors.ok}",

            "qa.table.header": f"bold {colors.accent}",
        }
    )


# =============================================================================
# Unicode / ASCII Fallbacks
# =============================================================================

def _can_use_unicode() -> bool:
    """Check if the terminal can handle the Unicode icons we print."""
    if os.name == 'nt':
        try:
            encoding = sys.stdout.encoding or 'utf-8'
            "✓✗•".encode(encoding)
            return True
        except (UnicodeEncodeError, LookupError, AttributeError):
            return False
    return True


_UNICODE_ICONS = {
    "check": "✓",
    "cross": "✗",
    "warning": "⚠️",
    "info": "ℹ",
    "bullet": "•",
    "arrow_right": "→",
    "stop": "⛔",
}

_ASCII_ICONS = {
    "check": "[OK]",
    "cross": "[X]",
    "warning": "[!]",
    "info": "[i]",
    "bullet": "-",
    "arrow_right": "->",
    "stop": "[STOP]",
}

_ICONS = _UNICODE_ICONS if _can_use_unicode() else _ASCII_ICONS


def icon(name: str) -> str:
    """Get an icon by name, using ASCII fallback if needed."""
    return _ICONS.get(name, "")


# =============================================================================
# Global Console Instance
# =============================================================================

# Single source of truth for output. Agent output is echoed verbatim, so
# markup and emoji interpretation stay off for user-provided text.
console = Console(theme=forge_theme(), force_terminal=None, emoji=False)

# Global verbosity flag
_VERBOSE = False


def set_verbose(verbose: bool) -> None:
    """Set global verbosity level."""
    global _VERBOSE
    _VERBOSE = verbose


def is_verbose() -> bool:
    """Check if verbose mode is enabled."""
    return _VERBOSE


# =============================================================================
# Basic Message Functions
# =============================================================================

def print_success(message: str) -> None:
    """Print a success message with checkmark."""
    console.print(f"{icon('check')} {message}", style="qa.ok", markup=False)


def print_error(message: str) -> None:
    """Print an error message with X."""
    console.print(f"{icon('cross')} {message}", style="qa.err", markup=False)


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"{icon('warning')} {message}", style="qa.warn", markup=False)


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"{icon('info')} {message}", style="qa.info", markup=False)


def print_muted(message: str) -> None:
    """Print muted/secondary text."""
    console.print(message, style="qa.muted", markup=False)


def print_debug(message: str) -> None:
    """Print muted text only when verbose mode is on."""
    if is_verbose():
        print_muted(message)


def print_panel(message: str, title: Optional[str] = None, style: str = "qa.info") -> None:
    """Print text inside a bordered panel."""
    console.print(Panel(message, title=title, border_style=style))


# =============================================================================
# Tables
# =============================================================================

def create_table(
    columns: Sequence[str],
    *,
    title: Optional[str] = None,
) -> Table:
    """Create a table with the standard header styling."""
    table = Table(title=title, header_style="qa.table.header", show_lines=False)
    for column in columns:
        table.add_column(column)
    return table


def print_table(table: Table) -> None:
    """Print a table to the console."""
    console.print(table)


# =============================================================================
# Logging Integration
# =============================================================================

def setup_rich_logging(level: int = logging.INFO) -> None:
    """
    Configure Python logging to use Rich for log output.

    Third-party loggers (uvicorn, sqlalchemy) end up on the same console.
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(
            console=console,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )],
    )
