"""
xcodebuild-mcp: MCP server for building Xcode projects and driving simulators.

Exposes xcodebuild and simctl as discrete tools so AI assistants can build,
inspect and run apps without composing shell commands.

Tools:
  build_macos              — build a scheme for macOS
  build_ios_device         — build a scheme for a generic iOS device
  build_simulator          — build a scheme for a named or identified simulator
  clean                    — xcodebuild clean
  show_build_settings      — raw -showBuildSettings output
  list_schemes             — schemes in a workspace or project
  get_app_path             — path to the built .app
  get_bundle_id            — CFBundleIdentifier of an .app
  list_simulators          — available simulators by runtime
  boot_simulator           — boot a simulator
  open_simulator           — bring up Simulator.app
  install_app_in_simulator — install an .app into a simulator
  launch_app_in_simulator  — launch a bundle id in a simulator
  launch_macos_app         — open a macOS .app

Usage:
  pip install .
  xcodebuild-mcp
"""

import logging
from typing import Optional

from mcp.server.fastmcp import Context, FastMCP

from . import build, simulator
from .config import configure_logging
from .destination import Platform
from .progress import ProgressSink, ProgressUpdate

logger = logging.getLogger(__name__)

mcp = FastMCP(
    "xcodebuild-mcp",
    instructions=(
        "Build Xcode projects and workspaces, inspect build settings, "
        "and manage iOS/watchOS/tvOS/visionOS simulators."
    ),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _progress_sink(ctx: Context) -> ProgressSink:
    """Forward executor progress to the client's progress token.

    MCP progress must increase, so a phase reset is held at the highest value
    already sent; the message still goes out as a debug log.
    """
    sent: Optional[int] = None

    async def sink(update: ProgressUpdate) -> None:
        nonlocal sent
        if sent is None or update.progress > sent:
            sent = update.progress
            await ctx.report_progress(sent, 100)
        await ctx.debug(update.message)
    return sink


def _params(
    scheme: Optional[str],
    workspace_path: Optional[str],
    project_path: Optional[str],
    configuration: Optional[str] = "Debug",
    derived_data_path: Optional[str] = None,
    extra_args: Optional[list[str]] = None,
) -> build.ProjectParams:
    return build.ProjectParams(
        workspace_path=workspace_path,
        project_path=project_path,
        scheme=scheme,
        configuration=configuration,
        derived_data_path=derived_data_path,
        extra_args=tuple(extra_args or ()),
    )


# ---------------------------------------------------------------------------
# Build tools
# ---------------------------------------------------------------------------

@mcp.tool()
async def build_macos(
    scheme: str,
    ctx: Context,
    workspace_path: Optional[str] = None,
    project_path: Optional[str] = None,
    configuration: str = "Debug",
    arch: Optional[str] = None,
    derived_data_path: Optional[str] = None,
    extra_args: Optional[list[str]] = None,
) -> str:
    """Build a scheme for macOS.

    Args:
        scheme: Scheme to build
        workspace_path: Path to the .xcworkspace (takes precedence over project_path)
        project_path: Path to the .xcodeproj
        configuration: Build configuration, e.g. "Debug" or "Release"
        arch: "arm64" or "x86_64"; omit to let xcodebuild choose
        derived_data_path: Custom DerivedData location
        extra_args: Additional xcodebuild arguments
    """
    params = _params(scheme, workspace_path, project_path, configuration, derived_data_path, extra_args)
    return await build.execute_xcode_build(
        params, Platform.MACOS, arch=arch, on_progress=_progress_sink(ctx)
    )


@mcp.tool()
async def build_ios_device(
    scheme: str,
    ctx: Context,
    workspace_path: Optional[str] = None,
    project_path: Optional[str] = None,
    configuration: str = "Debug",
    derived_data_path: Optional[str] = None,
    extra_args: Optional[list[str]] = None,
) -> str:
    """Build a scheme for a generic iOS device (generic/platform=iOS).

    Args:
        scheme: Scheme to build
        workspace_path: Path to the .xcworkspace (takes precedence over project_path)
        project_path: Path to the .xcodeproj
        configuration: Build configuration
        derived_data_path: Custom DerivedData location
        extra_args: Additional xcodebuild arguments
    """
    params = _params(scheme, workspace_path, project_path, configuration, derived_data_path, extra_args)
    return await build.execute_xcode_build(params, Platform.IOS, on_progress=_progress_sink(ctx))


@mcp.tool()
async def build_simulator(
    scheme: str,
    ctx: Context,
    platform: Platform = Platform.IOS_SIMULATOR,
    simulator_name: Optional[str] = None,
    simulator_id: Optional[str] = None,
    use_latest_os: bool = True,
    workspace_path: Optional[str] = None,
    project_path: Optional[str] = None,
    configuration: str = "Debug",
    derived_data_path: Optional[str] = None,
    extra_args: Optional[list[str]] = None,
) -> str:
    """Build a scheme for a simulator, chosen by id or by name.

    Use list_simulators to find names and ids. An id wins over a name.

    Args:
        scheme: Scheme to build
        platform: One of the simulator platforms, e.g. "iOS Simulator"
        simulator_name: Simulator name, e.g. "iPhone 16"
        simulator_id: Simulator UDID
        use_latest_os: With simulator_name, pick the latest OS runtime
        workspace_path: Path to the .xcworkspace (takes precedence over project_path)
        project_path: Path to the .xcodeproj
        configuration: Build configuration
        derived_data_path: Custom DerivedData location
        extra_args: Additional xcodebuild arguments
    """
    platform = Platform(platform)
    if not platform.is_simulator:
        raise ValueError(f"'{platform.value}' is not a simulator platform. Use build_macos or build_ios_device.")
    params = _params(scheme, workspace_path, project_path, configuration, derived_data_path, extra_args)
    return await build.execute_xcode_build(
        params,
        platform,
        simulator_name=simulator_name,
        simulator_id=simulator_id,
        use_latest_os=use_latest_os,
        on_progress=_progress_sink(ctx),
    )


@mcp.tool()
async def clean(
    scheme: str,
    ctx: Context,
    workspace_path: Optional[str] = None,
    project_path: Optional[str] = None,
    configuration: str = "Debug",
    platform: Platform = Platform.MACOS,
    simulator_name: Optional[str] = None,
    simulator_id: Optional[str] = None,
) -> str:
    """Clean build products for a scheme.

    Args:
        scheme: Scheme to clean
        workspace_path: Path to the .xcworkspace (takes precedence over project_path)
        project_path: Path to the .xcodeproj
        configuration: Build configuration
        platform: Platform whose products are cleaned; simulator platforms need a simulator
        simulator_name: Simulator name, for simulator platforms
        simulator_id: Simulator UDID, for simulator platforms
    """
    params = _params(scheme, workspace_path, project_path, configuration)
    return await build.execute_xcode_build(
        params,
        Platform(platform),
        "clean",
        simulator_name=simulator_name,
        simulator_id=simulator_id,
        on_progress=_progress_sink(ctx),
    )


# ---------------------------------------------------------------------------
# Project inspection tools
# ---------------------------------------------------------------------------

@mcp.tool()
async def show_build_settings(
    scheme: str,
    workspace_path: Optional[str] = None,
    project_path: Optional[str] = None,
    configuration: str = "Debug",
) -> str:
    """Show xcodebuild -showBuildSettings output for a scheme.

    Args:
        scheme: Scheme to inspect
        workspace_path: Path to the .xcworkspace (takes precedence over project_path)
        project_path: Path to the .xcodeproj
        configuration: Build configuration
    """
    return await build.show_build_settings(_params(scheme, workspace_path, project_path, configuration))


@mcp.tool()
async def list_schemes(
    workspace_path: Optional[str] = None,
    project_path: Optional[str] = None,
) -> str:
    """List the schemes in a workspace or project.

    Args:
        workspace_path: Path to the .xcworkspace (takes precedence over project_path)
        project_path: Path to the .xcodeproj
    """
    schemes = await build.list_schemes(_params(None, workspace_path, project_path, configuration=None))
    if not schemes:
        return "No schemes found."
    return "Schemes:\n" + "\n".join(f"  {s}" for s in schemes)


@mcp.tool()
async def get_app_path(
    scheme: str,
    platform: Platform,
    workspace_path: Optional[str] = None,
    project_path: Optional[str] = None,
    configuration: str = "Debug",
    simulator_name: Optional[str] = None,
    simulator_id: Optional[str] = None,
    use_latest_os: bool = True,
) -> str:
    """Get the path of the built .app bundle. Build the scheme first.

    Args:
        scheme: Scheme that produces the app
        platform: Target platform, e.g. "macOS", "iOS", "iOS Simulator"
        workspace_path: Path to the .xcworkspace (takes precedence over project_path)
        project_path: Path to the .xcodeproj
        configuration: Build configuration
        simulator_name: Simulator name, for simulator platforms
        simulator_id: Simulator UDID, for simulator platforms
        use_latest_os: With simulator_name, pick the latest OS runtime
    """
    app_path = await build.get_app_path(
        _params(scheme, workspace_path, project_path, configuration),
        Platform(platform),
        simulator_name=simulator_name,
        simulator_id=simulator_id,
        use_latest_os=use_latest_os,
    )
    return f"App path: {app_path}\n\n{build.app_path_next_steps(platform, app_path)}"


@mcp.tool()
def get_bundle_id(app_path: str) -> str:
    """Get the bundle identifier (CFBundleIdentifier) of an .app bundle.

    Args:
        app_path: Path to a macOS or iOS .app bundle
    """
    return f"Bundle ID: {simulator.bundle_id(app_path)}"


# ---------------------------------------------------------------------------
# Simulator and app tools
# ---------------------------------------------------------------------------

@mcp.tool()
async def list_simulators() -> str:
    """List available simulators grouped by OS runtime, with their UDIDs."""
    return await simulator.list_simulators()


@mcp.tool()
async def boot_simulator(simulator_uuid: str) -> str:
    """Boot a simulator.

    Args:
        simulator_uuid: Simulator UDID from list_simulators
    """
    return await simulator.boot_simulator(simulator_uuid)


@mcp.tool()
async def open_simulator() -> str:
    """Open Simulator.app so booted devices are visible."""
    return await simulator.open_simulator()


@mcp.tool()
async def install_app_in_simulator(simulator_uuid: str, app_path: str) -> str:
    """Install an .app bundle into a booted simulator.

    Args:
        simulator_uuid: Simulator UDID
        app_path: Path to the simulator build of the .app
    """
    return await simulator.install_app(simulator_uuid, app_path)


@mcp.tool()
async def launch_app_in_simulator(
    simulator_uuid: str,
    bundle_id: str,
    args: Optional[list[str]] = None,
) -> str:
    """Launch an installed app in a booted simulator.

    Args:
        simulator_uuid: Simulator UDID
        bundle_id: Bundle identifier, e.g. "com.example.MyApp"
        args: Launch arguments passed to the app
    """
    return await simulator.launch_app(simulator_uuid, bundle_id, args or ())


@mcp.tool()
async def launch_macos_app(app_path: str, args: Optional[list[str]] = None) -> str:
    """Launch a macOS .app bundle.

    Args:
        app_path: Path to the .app
        args: Launch arguments passed to the app
    """
    return await simulator.launch_macos_app(app_path, args or ())


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    configure_logging()
    logger.info("Starting xcodebuild-mcp on stdio")
    mcp.run()


if __name__ == "__main__":
    main()
