"""Services for external API interactions and review orchestration."""

from codeguardian.services.completer import ModelTier, ModelTiers, PydanticAICompleter
from codeguardian.services.interfaces import CommentPublisher, DiffSource, StateStore
from codeguardian.services.scheduler import CallResult, TaskScheduler

__all__ = [
    "CallResult",
    "CommentPublisher",
    "DiffSource",
    "ModelTier",
    "ModelTiers",
    "PydanticAICompleter",
    "StateStore",
    "TaskScheduler",
]
