"""Simulator control (xcrun simctl) and app bundle utilities."""

import json
import logging
import plistlib
from pathlib import Path
from typing import Optional, Sequence

from .executor import ExecutionResult, execute_command

logger = logging.getLogger(__name__)


def _check(result: ExecutionResult, what: str) -> str:
    if not result.succeeded:
        raise ValueError(f"{what} failed: {(result.error or '').strip()}")
    return result.output


def parse_simulators(payload: str) -> dict[str, list[dict]]:
    """Available devices from ``simctl list devices --json``, keyed by runtime name."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ValueError(f"Unexpected simctl output: {e}")
    if not isinstance(data, dict):
        raise ValueError(f"Unexpected simctl output: expected an object, got {type(data).__name__}")

    devices: dict[str, list[dict]] = {}
    for runtime, entries in data.get("devices", {}).items():
        available = [d for d in entries if d.get("isAvailable", True)]
        if available:
            # com.apple.CoreSimulator.SimRuntime.iOS-18-0 -> iOS 18.0
            name = runtime.rsplit(".", 1)[-1].replace("-", " ", 1).replace("-", ".")
            devices[name] = available
    return devices


def format_simulators(devices: dict[str, list[dict]]) -> str:
    if not devices:
        return "No available simulators."
    lines = []
    for runtime in sorted(devices):
        lines.append(f"■ {runtime}")
        for d in devices[runtime]:
            booted = " [Booted]" if d.get("state") == "Booted" else ""
            lines.append(f"  {d.get('name', '?')} ({d.get('udid', '?')}){booted}")
        lines.append("")
    return "\n".join(lines).rstrip()


async def list_simulators() -> str:
    result = await execute_command(
        ["xcrun", "simctl", "list", "devices", "available", "--json"], "List Simulators"
    )
    return format_simulators(parse_simulators(_check(result, "Listing simulators")))


async def boot_simulator(simulator_uuid: str) -> str:
    result = await execute_command(["xcrun", "simctl", "boot", simulator_uuid], "Boot Simulator")
    _check(result, f"Booting simulator {simulator_uuid}")
    return f"Simulator {simulator_uuid} booted."


async def open_simulator() -> str:
    result = await execute_command(["open", "-a", "Simulator"], "Open Simulator")
    _check(result, "Opening Simulator.app")
    return "Simulator app opened."


async def install_app(simulator_uuid: str, app_path: str) -> str:
    result = await execute_command(
        ["xcrun", "simctl", "install", simulator_uuid, app_path], "Install App"
    )
    _check(result, f"Installing {app_path}")
    return f"Installed {app_path} in simulator {simulator_uuid}."


async def launch_app(simulator_uuid: str, bundle_id: str, args: Sequence[str] = ()) -> str:
    result = await execute_command(
        ["xcrun", "simctl", "launch", simulator_uuid, bundle_id, *args], "Launch App"
    )
    output = _check(result, f"Launching {bundle_id}")
    return f"Launched {bundle_id} in simulator {simulator_uuid}.\n{output.strip()}".rstrip()


async def launch_macos_app(app_path: str, args: Sequence[str] = ()) -> str:
    command = ["open", app_path]
    if args:
        command += ["--args", *args]
    result = await execute_command(command, "Launch macOS App")
    _check(result, f"Launching {app_path}")
    return f"Launched {app_path}."


def _info_plist(app_path: str) -> Optional[Path]:
    bundle = Path(app_path)
    for candidate in (bundle / "Contents" / "Info.plist", bundle / "Info.plist"):
        if candidate.exists():
            return candidate
    return None


def bundle_id(app_path: str) -> str:
    """Read CFBundleIdentifier from a macOS (Contents/Info.plist) or iOS (Info.plist) bundle."""
    info_plist = _info_plist(app_path)
    if info_plist is None:
        raise ValueError(f"No Info.plist found in {app_path}")
    try:
        with open(info_plist, "rb") as f:
            plist = plistlib.load(f)
    except plistlib.InvalidFileException as e:
        raise ValueError(f"Could not read {info_plist}: {e}")

    identifier = plist.get("CFBundleIdentifier")
    if not identifier:
        raise ValueError(f"{info_plist} has no CFBundleIdentifier")
    logger.info("Bundle ID for %s: %s", app_path, identifier)
    return identifier
