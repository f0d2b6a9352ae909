"""xcodebuild command assembly and output parsing."""

import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Sequence

from . import config
from .destination import UNIVERSAL_MACOS_DESTINATION, Platform, resolve_destination
from .executor import execute_command
from .progress import ProgressSink

logger = logging.getLogger(__name__)

_WARNING_RE = re.compile(r"(?:\[warning\]|\bwarning): (.*)")
_SETTING_RE = re.compile(r"^\s*([A-Za-z0-9_]+) = (.*)$", re.MULTILINE)


class BuildError(ValueError):
    """xcodebuild ran and reported failure."""

    def __init__(self, message: str, details: Optional[str] = None):
        self.message = message
        self.details = details
        text = message if not details else f"{message}\n\n{truncate(details)}"
        super().__init__(text)


@dataclass
class ProjectParams:
    workspace_path: Optional[str] = None
    project_path: Optional[str] = None
    scheme: Optional[str] = None
    configuration: Optional[str] = "Debug"
    derived_data_path: Optional[str] = None
    extra_args: Sequence[str] = field(default_factory=tuple)


def truncate(text: str, limit: Optional[int] = None) -> str:
    limit = config.MAX_ERROR_CHARS if limit is None else limit
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n... ({len(text) - limit} more characters)"


def add_project_arguments(command: list[str], params: ProjectParams) -> None:
    """Append -workspace/-project, -scheme, -configuration and -derivedDataPath.

    A workspace wins over a project when both are given.
    """
    if params.workspace_path:
        command += ["-workspace", params.workspace_path]
    elif params.project_path:
        command += ["-project", params.project_path]
    else:
        raise ValueError("Either workspace_path or project_path is required")

    if params.scheme:
        command += ["-scheme", params.scheme]
    if params.configuration:
        command += ["-configuration", params.configuration]
    if params.derived_data_path:
        command += ["-derivedDataPath", params.derived_data_path]


def extract_warnings(output: str) -> list[str]:
    seen: dict[str, None] = {}
    for match in _WARNING_RE.finditer(output):
        seen.setdefault(match.group(1).strip(), None)
    return list(seen)


def _next_steps(params: ProjectParams, platform: Platform, by_id: bool) -> str:
    where = "workspace_path" if params.workspace_path else "project_path"
    if platform is Platform.MACOS:
        return (
            "Next Steps:\n"
            f"1. Get app path: get_app_path(platform=\"macOS\", {where}=..., scheme=\"{params.scheme}\")\n"
            "2. Get bundle ID: get_bundle_id(app_path=...)\n"
            "3. Launch app: launch_macos_app(app_path=...)"
        )
    if platform.is_simulator:
        selector = "simulator_id" if by_id else "simulator_name"
        return (
            "Next Steps:\n"
            f"1. Get app path: get_app_path(platform=\"{platform.value}\", {selector}=..., ...)\n"
            "2. Boot simulator: boot_simulator(simulator_uuid=...)\n"
            "3. Install & launch: install_app_in_simulator(...), launch_app_in_simulator(...)"
        )
    return (
        "Next Steps:\n"
        f"1. Get app path: get_app_path(platform=\"{platform.value}\", {where}=..., scheme=\"{params.scheme}\")\n"
        "2. Get bundle ID: get_bundle_id(app_path=...)"
    )


def app_path_next_steps(platform: Platform, app_path: str) -> str:
    """Follow-up tool calls for an app found by :func:`get_app_path`."""
    platform = Platform(platform)
    if platform is Platform.MACOS:
        return (
            "Next Steps:\n"
            f"1. Get bundle ID: get_bundle_id(app_path=\"{app_path}\")\n"
            f"2. Launch app: launch_macos_app(app_path=\"{app_path}\")"
        )
    if platform.is_simulator:
        return (
            "Next Steps:\n"
            f"1. Get bundle ID: get_bundle_id(app_path=\"{app_path}\")\n"
            "2. Boot simulator: boot_simulator(simulator_uuid=\"SIMULATOR_UUID\")\n"
            f"3. Install app: install_app_in_simulator(simulator_uuid=\"SIMULATOR_UUID\", app_path=\"{app_path}\")\n"
            "4. Launch app: launch_app_in_simulator(simulator_uuid=\"SIMULATOR_UUID\", bundle_id=\"BUNDLE_ID\")"
        )
    return (
        "Next Steps:\n"
        f"1. Get bundle ID: get_bundle_id(app_path=\"{app_path}\")\n"
        f"2. Install the app on a connected {platform.value} device with Xcode"
    )


async def execute_xcode_build(
    params: ProjectParams,
    platform: Platform,
    action: str = "build",
    *,
    simulator_name: Optional[str] = None,
    simulator_id: Optional[str] = None,
    use_latest_os: bool = True,
    arch: Optional[str] = None,
    on_progress: Optional[ProgressSink] = None,
) -> str:
    """Run ``xcodebuild <action>`` for a scheme on ``platform``.

    Returns the success text. Raises InvalidTargetError before anything is
    spawned if a simulator platform has no simulator, and BuildError when
    xcodebuild fails.
    """
    platform = Platform(platform)
    label = f"{platform.value} {action.capitalize()}"
    logger.info("Starting %s for scheme %s", label, params.scheme)

    destination = resolve_destination(platform, simulator_name, simulator_id, use_latest_os, arch)

    command = ["xcodebuild"]
    add_project_arguments(command, params)
    command += ["-destination", destination]
    command += list(params.extra_args)
    command.append(action)

    result = await execute_command(command, label, on_progress)
    warnings = [f"Warning: {w}" for w in extract_warnings(result.unformatted)]

    if not result.succeeded:
        logger.error("%s failed: %s", label, result.error)
        message = f"{label} failed for scheme {params.scheme}."
        if warnings:
            message = "\n".join(warnings) + "\n\n" + message
        raise BuildError(message, result.error)

    logger.info("%s succeeded.", label)
    lines = warnings + [f"{label} succeeded for scheme {params.scheme}."]
    if action == "build":
        lines += ["", _next_steps(params, platform, by_id=bool(simulator_id))]
    return "\n".join(lines)


def parse_build_settings(output: str) -> dict[str, str]:
    """``KEY = value`` lines to a dict. The first target's value wins."""
    settings: dict[str, str] = {}
    for key, value in _SETTING_RE.findall(output):
        settings.setdefault(key, value.strip())
    return settings


def app_path_from_settings(settings: dict[str, str]) -> Optional[str]:
    products_dir = settings.get("BUILT_PRODUCTS_DIR")
    product_name = settings.get("FULL_PRODUCT_NAME")
    if not products_dir or not product_name:
        return None
    return f"{products_dir}/{product_name}"


def parse_scheme_list(output: str) -> list[str]:
    """Scheme names from ``xcodebuild -list`` output."""
    schemes: list[str] = []
    in_schemes = False
    for line in output.splitlines():
        stripped = line.strip()
        if stripped == "Schemes:":
            in_schemes = True
            continue
        if in_schemes:
            if not stripped or stripped.endswith(":"):
                break
            schemes.append(stripped)
    return schemes


async def show_build_settings(params: ProjectParams, on_progress: Optional[ProgressSink] = None) -> str:
    command = ["xcodebuild", "-showBuildSettings"]
    add_project_arguments(command, params)
    result = await execute_command(command, "Show Build Settings", on_progress, pretty=False)
    if not result.succeeded:
        raise BuildError(f"Failed to show build settings for scheme {params.scheme}.", result.error)
    return result.output


async def list_schemes(params: ProjectParams) -> list[str]:
    command = ["xcodebuild", "-list"]
    add_project_arguments(command, params)
    result = await execute_command(command, "List Schemes", pretty=False)
    if not result.succeeded:
        raise BuildError("Failed to list schemes.", result.error)
    return parse_scheme_list(result.output)


async def get_app_path(
    params: ProjectParams,
    platform: Platform,
    *,
    simulator_name: Optional[str] = None,
    simulator_id: Optional[str] = None,
    use_latest_os: bool = True,
) -> str:
    """Locate the built .app via BUILT_PRODUCTS_DIR and FULL_PRODUCT_NAME."""
    platform = Platform(platform)
    if platform is Platform.MACOS:
        destination = UNIVERSAL_MACOS_DESTINATION
    else:
        destination = resolve_destination(platform, simulator_name, simulator_id, use_latest_os)

    command = ["xcodebuild", "-showBuildSettings"]
    add_project_arguments(command, params)
    command += ["-destination", destination]

    result = await execute_command(command, "Get App Path", pretty=False)
    if not result.succeeded:
        raise BuildError("Failed to get app path.", result.error)

    app_path = app_path_from_settings(parse_build_settings(result.output))
    if app_path is None:
        raise ValueError(
            "Failed to extract app path from build settings. "
            "Make sure the app has been built first."
        )
    return app_path
