"""Runtime settings, read once from the environment."""

import logging
import os
import sys


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() not in ("0", "false", "no", "off", "")


LOG_LEVEL = os.environ.get("XCODEBUILD_MCP_LOG_LEVEL", "INFO").upper()

# Pipe xcodebuild output through a formatter (xcpretty) when one is installed.
PRETTY_OUTPUT = _env_flag("XCODEBUILD_MCP_PRETTY", True)
FORMATTER = os.environ.get("XCODEBUILD_MCP_FORMATTER", "xcpretty")

PROGRESS_INTERVAL = float(os.environ.get("XCODEBUILD_MCP_PROGRESS_INTERVAL", "1.0"))

# stderr passed back to the client is cut to this many characters
MAX_ERROR_CHARS = int(os.environ.get("XCODEBUILD_MCP_MAX_ERROR_CHARS", "8000"))


class FlushingStreamHandler(logging.StreamHandler):
    def emit(self, record):
        super().emit(record)
        self.flush()


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Send all logging to stderr; stdout belongs to the MCP transport."""
    handler = FlushingStreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        handlers=[handler],
    )
