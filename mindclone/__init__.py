"""
mindclone: a personal memory journal.

Capture text, images and links; let a model summarize, tag, relate and
answer questions about them.

Basic usage:
    from mindclone import MemoryRepository, InferenceGateway, Workspace

    async with MemoryRepository(path) as repo:
        ws = Workspace(repo, InferenceGateway(provider))
        memory = await ws.capture(MemoryType.TEXT, "Buy milk")
"""

__version__ = "0.1.0"

from .gateway import InferenceGateway
from .memory_store import DuplicateMemoryError, MemoryStore, StoreError
from .providers.base import InferenceError
from .repository import AlreadyProcessingError, MemoryRepository
from .types import AiAction, ChatMessage, ImageData, Memory, MemoryType, ProcessingKind, SmartSummary
from .workspace import ValidationError, Workspace

__all__ = [
    "__version__",
    "AiAction",
    "AlreadyProcessingError",
    "ChatMessage",
    "DuplicateMemoryError",
    "ImageData",
    "InferenceError",
    "InferenceGateway",
    "Memory",
    "MemoryRepository",
    "MemoryStore",
    "MemoryType",
    "ProcessingKind",
    "SmartSummary",
    "StoreError",
    "ValidationError",
    "Workspace",
]
