"""
Automation run orchestration: user provisioning, photo intake, training and storybook assembly.
"""

from .config import AutomationSettings
from .errors import (
    AutomationError,
    AutomationValidationError,
    InvalidTransitionError,
    PhotoRejectedError,
    StageFailure,
)
from .events import EventChannel, NotificationHub, RunBroadcaster
from .guard import StorybookDispatchGuard
from .models import (
    AutomationRun,
    JobStatus,
    RunEvent,
    RunStatus,
    StorybookSnapshot,
    TrainingSnapshot,
)
from .progress import compute_run_progress, next_run_progress
from .reconciler import EventReconciler
from .store import InMemoryRunStore, RunStore, YamlRunStore
from .transitions import can_transition
from .workflow import AutomationOrchestrator

__all__ = [
    "AutomationError",
    "AutomationOrchestrator",
    "AutomationRun",
    "AutomationSettings",
    "AutomationValidationError",
    "EventChannel",
    "EventReconciler",
    "InMemoryRunStore",
    "InvalidTransitionError",
    "JobStatus",
    "NotificationHub",
    "PhotoRejectedError",
    "RunBroadcaster",
    "RunEvent",
    "RunStatus",
    "RunStore",
    "StageFailure",
    "StorybookDispatchGuard",
    "StorybookSnapshot",
    "TrainingSnapshot",
    "YamlRunStore",
    "can_transition",
    "compute_run_progress",
    "next_run_progress",
]
