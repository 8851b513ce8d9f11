"""
KidBookAI package exposing the automation run orchestrator and its collaborators.
"""

from .automation import (
    AutomationOrchestrator,
    AutomationRun,
    AutomationSettings,
    RunStatus,
)
from .integrations import Book, PhotoUpload, UserDetails

__all__ = [
    "AutomationOrchestrator",
    "AutomationRun",
    "AutomationSettings",
    "Book",
    "PhotoUpload",
    "RunStatus",
    "UserDetails",
]
