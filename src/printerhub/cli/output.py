"""Output formatting for the printerhub CLI.

Every public function takes a ``json_mode`` flag:
    - ``True``  -> a ``{status, data | error}`` JSON envelope
    - ``False`` -> Rich tables and panels for humans
"""

from __future__ import annotations

import json
import math
import sys
from datetime import datetime
from io import StringIO
from typing import Any, Dict, List, Optional, Union

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text


def format_time(seconds: Optional[Union[int, float]]) -> str:
    """Convert seconds to ``Xh Ym Zs``."""
    if seconds is None or seconds < 0:
        return "N/A"
    hours, remainder = divmod(int(seconds), 3600)
    minutes, secs = divmod(remainder, 60)
    parts: list[str] = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    parts.append(f"{secs}s")
    return " ".join(parts)


def format_bytes(size_bytes: Optional[Union[int, float]]) -> str:
    """Convert bytes to ``1.2 MB``."""
    if size_bytes is None or size_bytes < 0:
        return "N/A"
    if size_bytes == 0:
        return "0 B"
    units = ("B", "KB", "MB", "GB", "TB")
    exponent = min(int(math.log(size_bytes, 1024)), len(units) - 1)
    value = size_bytes / (1024 ** exponent)
    if exponent == 0:
        return f"{int(value)} B"
    return f"{value:.1f} {units[exponent]}"


def format_temp(actual: Optional[float], target: Optional[float]) -> str:
    actual_str = f"{actual:.1f}°C" if actual is not None else "N/A"
    target_str = f"{target:.1f}°C" if target else "off"
    return f"{actual_str} → {target_str}"


def _format_date(raw: Any) -> str:
    if raw is None:
        return ""
    try:
        return datetime.fromtimestamp(raw).strftime("%Y-%m-%d %H:%M")
    except (OSError, ValueError, TypeError):
        return str(raw)


def _render(renderable: Any) -> str:
    """Render a Rich object to a string."""
    buf = StringIO()
    console = Console(file=buf, force_terminal=sys.stdout.isatty(), width=100)
    console.print(renderable)
    return buf.getvalue().rstrip("\n")


def _envelope(status: str, **body: Any) -> str:
    return json.dumps({"status": status, **body}, indent=2, sort_keys=False)


def format_error(message: str, code: str = "ERROR", *, json_mode: bool = False) -> str:
    if json_mode:
        return _envelope("error", error={"code": code, "message": message})
    return _render(Panel(Text(message, style="red"), title=f"Error [{code}]", border_style="red"))


def format_status(state: Dict[str, Any], *, json_mode: bool = False, extra: Optional[Dict[str, Any]] = None) -> str:
    """Format a ``PrinterState.to_dict()``."""
    if json_mode:
        return _envelope("success", data={"printer": state, **(extra or {})})

    state_text = state.get("state", "unknown")
    job = state.get("job") or {}

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="bold cyan", no_wrap=True)
    table.add_column("Value")

    color = {"idle": "green", "printing": "yellow", "paused": "yellow",
             "error": "red", "offline": "red"}.get(state_text, "white")
    table.add_row("State", f"[{color}]{state_text}[/{color}]")
    table.add_row("Connected", "yes" if state.get("connected") else "[red]no[/red]")
    table.add_row("Hotend", format_temp(state.get("tool_temp_actual"), state.get("tool_temp_target")))
    table.add_row("Bed", format_temp(state.get("bed_temp_actual"), state.get("bed_temp_target")))
    if state.get("chamber_temp_actual") is not None:
        table.add_row("Chamber", format_temp(state.get("chamber_temp_actual"), state.get("chamber_temp_target")))

    if job.get("file_name"):
        table.add_row("File", job["file_name"])
    if job.get("completion") is not None:
        table.add_row("Progress", f"{job['completion']:.1f}%")
    if job.get("print_time_left_seconds") is not None:
        table.add_row("Time left", format_time(job["print_time_left_seconds"]))

    return _render(Panel(table, title="Printer Status", border_style="blue"))


def format_files(files: List[Dict[str, Any]], *, json_mode: bool = False) -> str:
    """Format a list of ``PrinterFile.to_dict()``."""
    if json_mode:
        return _envelope("success", data={"files": files, "count": len(files)})

    if not files:
        return _render(Panel("No files on printer.", title="Files", border_style="yellow"))

    table = Table(title="Files", border_style="blue")
    table.add_column("Name", style="bold")
    table.add_column("Size", justify="right")
    table.add_column("Date")
    for f in files:
        table.add_row(f.get("name", ""), format_bytes(f.get("size_bytes")), _format_date(f.get("date")))
    return _render(table)


def format_file(info: Dict[str, Any], *, json_mode: bool = False) -> str:
    if json_mode:
        return _envelope("success", data={"file": info})

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="bold cyan", no_wrap=True)
    table.add_column("Value")
    table.add_row("Name", str(info.get("name", "")))
    table.add_row("Path", str(info.get("path", "")))
    table.add_row("Size", format_bytes(info.get("size_bytes")))
    table.add_row("Date", _format_date(info.get("date")))
    return _render(Panel(table, title="File", border_style="blue"))


def format_action(action: str, result: Dict[str, Any], *, json_mode: bool = False) -> str:
    """Format a ``PrintResult`` or ``UploadResult`` dict."""
    if json_mode:
        return _envelope("success", data={"action": action, **result})

    message = result.get("message", f"{action.capitalize()} completed.")
    border = {"cancel": "red", "temp": "yellow"}.get(action, "green")
    if not result.get("success", True):
        border = "red"
    return _render(Panel(Text(message, style=f"bold {border}"), title=action.capitalize(), border_style=border))
