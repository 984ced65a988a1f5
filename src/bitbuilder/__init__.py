"""Bit Builder - a joke-writing agent bridge."""

from .config import Settings, get_settings
from .orchestrator import BridgeOrchestrator
from .tools import ToolExecutor
from .transcript import Transcript

__version__ = "0.1.0"

__all__ = ["BridgeOrchestrator", "Settings", "ToolExecutor", "Transcript", "get_settings"]
