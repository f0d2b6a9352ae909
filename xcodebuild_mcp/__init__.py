"""MCP server exposing xcodebuild and simctl as tools."""

__version__ = "0.1.0"
