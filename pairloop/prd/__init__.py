"""
PRD task list: models and the debounced task store.
"""

from pairloop.prd.models import (
    ConsensusRecord,
    ErrorCode,
    ImplementationTask,
    OperationResult,
    Prd,
    ReviewTask,
    Task,
    TaskKind,
    UserStory,
)
from pairloop.prd.store import (
    PrdError,
    PrdExistsError,
    PrdNotFoundError,
    PrdNotLoadedError,
    PrdParseError,
    PrdValidationError,
    TaskStore,
    find_prd_files,
    generate_prd_slug,
)

__all__ = [
    "ConsensusRecord",
    "ErrorCode",
    "ImplementationTask",
    "OperationResult",
    "Prd",
    "ReviewTask",
    "Task",
    "TaskKind",
    "UserStory",
    "PrdError",
    "PrdExistsError",
    "PrdNotFoundError",
    "PrdNotLoadedError",
    "PrdParseError",
    "PrdValidationError",
    "TaskStore",
    "find_prd_files",
    "generate_prd_slug",
]
