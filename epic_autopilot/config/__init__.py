"""Configuration management for epic-autopilot."""

from epic_autopilot.config.settings import AutopilotSettings

__all__ = ["AutopilotSettings"]
