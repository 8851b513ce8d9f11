"""
Collaborator contracts and adapters used by the automation orchestrator.
"""

from .contracts import (
    AssemblyProvider,
    AssemblyRequest,
    AssemblyUpdated,
    Book,
    BookStore,
    ObjectStorage,
    PhotoAsset,
    PhotoEvaluation,
    PhotoEvaluator,
    PhotoUpload,
    TrainingImage,
    TrainingProvider,
    TrainingRequest,
    TrainingUpdated,
    UserDetails,
    UserRecord,
    UserStore,
)
from .memory import InMemoryBookStore, InMemoryObjectStorage, InMemoryUserStore

__all__ = [
    "AssemblyProvider",
    "AssemblyRequest",
    "AssemblyUpdated",
    "Book",
    "BookStore",
    "InMemoryBookStore",
    "InMemoryObjectStorage",
    "InMemoryUserStore",
    "ObjectStorage",
    "PhotoAsset",
    "PhotoEvaluation",
    "PhotoEvaluator",
    "PhotoUpload",
    "TrainingImage",
    "TrainingProvider",
    "TrainingRequest",
    "TrainingUpdated",
    "UserDetails",
    "UserRecord",
    "UserStore",
]
