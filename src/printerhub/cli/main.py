"""printerhub CLI: one command surface for every supported printer firmware.

The printer is chosen either by name from ``~/.printerhub/config.yaml``
(``--printer``, or the active printer) or ad hoc with ``--type`` and
``--host``.  Every subcommand takes ``--json`` for machine-parseable output.
"""

from __future__ import annotations

import hashlib
import logging
import os
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

import click

from printerhub.cli.output import (
    format_action,
    format_error,
    format_file,
    format_files,
    format_status,
)
from printerhub.config import load_printer_config, load_settings
from printerhub.log_config import configure_logging
from printerhub.printers.bambu import BambuAdapter, BambuPrintOptions, split_credentials
from printerhub.printers.base import (
    InvalidCredentialsError,
    PrinterAdapter,
    PrinterError,
    TransportError,
    UnsupportedOperationError,
    UnsupportedPrinterTypeError,
)
from printerhub.registry import AdapterRegistry

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _error_code(exc: Exception) -> str:
    if isinstance(exc, FileNotFoundError):
        return "FILE_NOT_FOUND"
    if isinstance(exc, InvalidCredentialsError):
        return "INVALID_CREDENTIALS"
    if isinstance(exc, UnsupportedOperationError):
        return "UNSUPPORTED"
    if isinstance(exc, TransportError):
        return "TRANSPORT_ERROR"
    return "PRINTER_ERROR"


def _run(json_mode: bool, action: str, fn: Callable[[], _T]) -> _T:
    """Call *fn*, turning adapter failures into CLI errors (exit code 1)."""
    try:
        return fn()
    except (PrinterError, FileNotFoundError) as exc:
        logger.debug("%s failed", action, exc_info=True)
        message = f"{action} failed: {exc}"
        if json_mode:
            click.echo(format_error(message, code=_error_code(exc), json_mode=True))
            sys.exit(1)
        raise click.ClickException(message) from exc


def _registry(ctx: click.Context) -> AdapterRegistry:
    """Return the process registry, building it on first use.

    The registry is torn down when the command finishes.
    """
    obj = ctx.find_root().obj
    if obj.get("registry") is None:
        registry = AdapterRegistry.from_settings(obj["settings"])
        obj["registry"] = registry
        ctx.find_root().call_on_close(registry.teardown_all)
    return obj["registry"]


def _printer_config(ctx: click.Context) -> Dict[str, Any]:
    obj = ctx.find_root().obj
    if obj.get("type") or obj.get("host"):
        if not obj.get("host"):
            raise click.UsageError("--host is required when --type is given.")
        cfg: Dict[str, Any] = {
            "type": obj.get("type") or "octoprint",
            "host": obj["host"],
            "port": None,
            "api_key": "",
        }
    else:
        try:
            cfg = load_printer_config(obj.get("printer"), config_path=obj.get("config_path"))
        except ValueError as exc:
            raise click.ClickException(str(exc)) from exc

    if obj.get("port"):
        cfg["port"] = obj["port"]
    if obj.get("api_key"):
        cfg["api_key"] = obj["api_key"]
    return cfg


def _resolve(ctx: click.Context) -> Tuple[PrinterAdapter, Dict[str, Any]]:
    """Return the adapter and connection details for the selected printer."""
    cfg = _printer_config(ctx)
    registry = _registry(ctx)
    try:
        adapter = registry.resolve(cfg["type"])
    except UnsupportedPrinterTypeError as exc:
        raise click.UsageError(f"{exc}. Supported types: {', '.join(registry.types)}") from exc
    return adapter, cfg


def _parse_ams_mapping(ctx: click.Context, param: click.Parameter, value: Optional[str]) -> List[int]:
    if not value:
        return []
    try:
        return [int(slot) for slot in value.split(",") if slot.strip()]
    except ValueError as exc:
        raise click.BadParameter("expected comma-separated slot numbers, e.g. 0,1,2") from exc


def _file_md5(path: str) -> str:
    digest = hashlib.md5()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--printer",
    "-p",
    default=None,
    envvar="PRINTERHUB_PRINTER",
    help="Printer name from the config file (overrides the active printer).",
)
@click.option("--type", "printer_type", default=None, help="Printer type for an ad hoc printer (e.g. klipper, bambu).")
@click.option("--host", default=None, help="Printer host or IP for an ad hoc printer.")
@click.option("--port", default=None, help="Port (defaults to the vendor's standard port).")
@click.option("--api-key", default=None, help="API key, password, or '<serial>:<access code>' for Bambu.")
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Config file (default ~/.printerhub/config.yaml).",
)
@click.version_option(package_name="printerhub")
@click.pass_context
def cli(
    ctx: click.Context,
    printer: Optional[str],
    printer_type: Optional[str],
    host: Optional[str],
    port: Optional[str],
    api_key: Optional[str],
    config_path: Optional[Path],
) -> None:
    """printerhub: control OctoPrint, Klipper, Duet, Repetier, PrusaLink,
    Creality and Bambu Lab printers from one place."""
    ctx.ensure_object(dict)
    settings = load_settings(config_path)
    ctx.obj.update(
        printer=printer,
        type=printer_type,
        host=host,
        port=port,
        api_key=api_key,
        config_path=config_path,
        settings=settings,
    )
    try:
        configure_logging(settings.log_dir, level=settings.log_level)
    except OSError as exc:
        click.echo(f"Warning: file logging disabled: {exc}", err=True)


# ---------------------------------------------------------------------------
# State queries
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def status(ctx: click.Context, json_mode: bool) -> None:
    """Show printer state, temperatures and job progress."""
    adapter, cfg = _resolve(ctx)
    state = _run(json_mode, "Status", lambda: adapter.get_status(cfg["host"], cfg["port"], cfg["api_key"]))
    click.echo(format_status(state.to_dict(), json_mode=json_mode, extra={"printer_type": adapter.name}))


@cli.command()
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def files(ctx: click.Context, json_mode: bool) -> None:
    """List the files stored on the printer."""
    adapter, cfg = _resolve(ctx)
    entries = _run(json_mode, "File listing", lambda: adapter.get_files(cfg["host"], cfg["port"], cfg["api_key"]))
    click.echo(format_files([f.to_dict() for f in entries], json_mode=json_mode))


@cli.command("file")
@click.argument("name")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def file_info(ctx: click.Context, name: str, json_mode: bool) -> None:
    """Show metadata for one file on the printer."""
    adapter, cfg = _resolve(ctx)
    entry = _run(json_mode, "File lookup", lambda: adapter.get_file(cfg["host"], cfg["port"], cfg["api_key"], name))
    click.echo(format_file(entry.to_dict(), json_mode=json_mode))


# ---------------------------------------------------------------------------
# File management and print control
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--name", "remote_name", default=None, help="Name to store the file under (default: local name).")
@click.option("--print", "print_after", is_flag=True, help="Start printing once uploaded.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def upload(ctx: click.Context, file_path: str, remote_name: Optional[str], print_after: bool, json_mode: bool) -> None:
    """Upload a local file to the printer."""
    adapter, cfg = _resolve(ctx)
    filename = remote_name or os.path.basename(file_path)
    result = _run(
        json_mode,
        "Upload",
        lambda: adapter.upload_file(cfg["host"], cfg["port"], cfg["api_key"], file_path, filename, print_after),
    )
    click.echo(format_action("upload", result.to_dict(), json_mode=json_mode))


@cli.command()
@click.argument("name")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def start(ctx: click.Context, name: str, json_mode: bool) -> None:
    """Start printing a file already stored on the printer."""
    adapter, cfg = _resolve(ctx)
    result = _run(json_mode, "Start", lambda: adapter.start_job(cfg["host"], cfg["port"], cfg["api_key"], name))
    click.echo(format_action("start", result.to_dict(), json_mode=json_mode))


@cli.command()
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def cancel(ctx: click.Context, json_mode: bool) -> None:
    """Cancel the running job."""
    adapter, cfg = _resolve(ctx)
    result = _run(json_mode, "Cancel", lambda: adapter.cancel_job(cfg["host"], cfg["port"], cfg["api_key"]))
    click.echo(format_action("cancel", result.to_dict(), json_mode=json_mode))


@cli.command()
@click.argument("component")
@click.argument("value", type=float)
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def temp(ctx: click.Context, component: str, value: float, json_mode: bool) -> None:
    """Set the target temperature of COMPONENT (tool, bed or chamber)."""
    adapter, cfg = _resolve(ctx)
    result = _run(
        json_mode,
        "Set temperature",
        lambda: adapter.set_temperature(cfg["host"], cfg["port"], cfg["api_key"], component, value),
    )
    click.echo(format_action("temp", result.to_dict(), json_mode=json_mode))


@cli.command("print-3mf")
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--project-name", default=None, help="Project name shown on the printer (default: file name).")
@click.option("--plate", "plate_index", default=0, show_default=True, help="Plate index inside the 3MF.")
@click.option("--ams-mapping", callback=_parse_ams_mapping, default=None, help="AMS slot per filament, e.g. 0,1,2.")
@click.option("--use-ams", is_flag=True, help="Feed from the AMS (needs --ams-mapping).")
@click.option("--no-bed-leveling", is_flag=True, help="Skip automatic bed leveling.")
@click.option("--flow-cali", is_flag=True, help="Run flow calibration.")
@click.option("--vibration-cali", is_flag=True, help="Run vibration compensation calibration.")
@click.option("--layer-inspect", is_flag=True, help="Enable first-layer inspection.")
@click.option("--timelapse", is_flag=True, help="Record a timelapse.")
@click.option("--md5", default=None, help="MD5 of the file, or 'auto' to compute it.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def print_3mf(
    ctx: click.Context,
    file_path: str,
    project_name: Optional[str],
    plate_index: int,
    ams_mapping: List[int],
    use_ams: bool,
    no_bed_leveling: bool,
    flow_cali: bool,
    vibration_cali: bool,
    layer_inspect: bool,
    timelapse: bool,
    md5: Optional[str],
    json_mode: bool,
) -> None:
    """Upload a sliced 3MF to a Bambu printer and start it."""
    adapter, cfg = _resolve(ctx)
    if not isinstance(adapter, BambuAdapter):
        raise click.UsageError(f"print-3mf needs a bambu printer, not {adapter.name}.")

    if md5 == "auto":
        md5 = _file_md5(file_path)
    options = BambuPrintOptions(
        file_path=file_path,
        project_name=project_name,
        plate_index=plate_index,
        use_ams=use_ams,
        ams_mapping=ams_mapping,
        bed_leveling=not no_bed_leveling,
        flow_calibration=flow_cali,
        vibration_calibration=vibration_cali,
        layer_inspect=layer_inspect,
        timelapse=timelapse,
        md5=md5,
    )

    def _print() -> Any:
        serial, token = split_credentials(cfg["api_key"])
        return adapter.print_3mf(cfg["host"], serial, token, options)

    result = _run(json_mode, "Print", _print)
    click.echo(format_action("start", result.to_dict(), json_mode=json_mode))


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
