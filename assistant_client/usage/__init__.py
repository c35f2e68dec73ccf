"""Usage quota tracking."""

from .gate import UsageGate
from .stats import UNLIMITED, UsageResource, UsageStats, countdown_to, format_countdown

__all__ = [
    "UNLIMITED",
    "UsageGate",
    "UsageResource",
    "UsageStats",
    "countdown_to",
    "format_countdown",
]
