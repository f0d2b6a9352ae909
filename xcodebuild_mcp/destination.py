"""Map a platform and optional simulator selection to an xcodebuild -destination value.

xcodebuild parses the descriptor literally, so the formats here are exact:

  platform=iOS Simulator,id=<UDID>
  platform=iOS Simulator,name=<NAME>[,OS=latest]
  platform=macOS[,arch=<ARCH>]
  generic/platform=<PLATFORM>
"""

from enum import Enum
from typing import Optional

# Both slices listed, for universal-binary products. Callers wanting this pass it
# as -destination directly; resolve_destination only emits single-arch forms.
UNIVERSAL_MACOS_DESTINATION = "platform=macOS,arch=arm64,arch=x86_64"


class Platform(str, Enum):
    MACOS = "macOS"
    IOS = "iOS"
    IOS_SIMULATOR = "iOS Simulator"
    WATCHOS = "watchOS"
    WATCHOS_SIMULATOR = "watchOS Simulator"
    TVOS = "tvOS"
    TVOS_SIMULATOR = "tvOS Simulator"
    VISIONOS = "visionOS"
    VISIONOS_SIMULATOR = "visionOS Simulator"

    @property
    def is_simulator(self) -> bool:
        return self.value.endswith(" Simulator")


class InvalidTargetError(ValueError):
    """The destination can't be determined from the given platform and simulator."""


def resolve_destination(
    platform: Platform,
    simulator_name: Optional[str] = None,
    simulator_id: Optional[str] = None,
    use_latest_os: bool = True,
    arch: Optional[str] = None,
) -> str:
    """Build the destination descriptor for ``platform``.

    A simulator id wins over a name. ``use_latest_os`` only applies to the
    name form. ``arch`` only applies to macOS.

    Raises:
        InvalidTargetError: simulator platform with neither name nor id.
    """
    platform = Platform(platform)

    if platform.is_simulator:
        if simulator_id:
            return f"platform={platform.value},id={simulator_id}"
        if simulator_name:
            suffix = ",OS=latest" if use_latest_os else ""
            return f"platform={platform.value},name={simulator_name}{suffix}"
        raise InvalidTargetError(
            f"Simulator name or ID is required for specific {platform.value} operations"
        )

    if platform is Platform.MACOS:
        return f"platform=macOS,arch={arch}" if arch else "platform=macOS"

    return f"generic/platform={platform.value}"
