"""
Data models for the PRD task list.

A PRD holds exactly one task collection: `implementation_tasks` (phased work
items) or `userStories` (prioritized stories). The two task shapes form a
tagged union discriminated by `kind`. Keys we don't model are kept in `extra`
so documents round-trip without losing data.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Optional, Union


TASK_STATUSES = ("pending", "in_progress", "completed", "failed", "blocked")
PRD_STATUSES = ("planning", "in_progress", "completed", "paused", "blocked")

DEFAULT_COMPLETION_PROMISE = "<promise>COMPLETE</promise>"

_NUMERIC_SUFFIX = re.compile(r"(\d+)$")


def now_iso() -> str:
    """UTC timestamp for persisted fields."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def id_suffix(task_id: str) -> int:
    """Numeric suffix of a task id ("impl-007" -> 7), or 0 if there is none."""
    match = _NUMERIC_SUFFIX.search(task_id)
    return int(match.group(1)) if match else 0


def id_prefix(task_id: str) -> str:
    """Id with its numeric suffix stripped ("US-003" -> "US-")."""
    return _NUMERIC_SUFFIX.sub("", task_id)


class TaskKind(Enum):
    IMPLEMENTATION = "implementation"
    STORY = "story"


class ErrorCode(str, Enum):
    """Domain error codes carried by a failed OperationResult."""
    NO_PRD = "NO_PRD"
    NO_TASKS = "NO_TASKS"
    TASK_NOT_FOUND = "TASK_NOT_FOUND"
    REVIEW_NOT_FOUND = "REVIEW_NOT_FOUND"
    INVALID_STATUS = "INVALID_STATUS"
    INVALID_PRIORITY = "INVALID_PRIORITY"
    INVALID_DOCUMENT = "INVALID_DOCUMENT"       # Change would break the PRD schema


@dataclass
class OperationResult:
    """Uniform outcome of a store mutation. Domain failures never raise."""
    success: bool
    message: str
    task_id: Optional[str] = None
    error: Optional[ErrorCode] = None
    data: Optional[dict] = None

    @classmethod
    def ok(cls, message: str, task_id: str = None, data: dict = None) -> "OperationResult":
        return cls(success=True, message=message, task_id=task_id, data=data)

    @classmethod
    def fail(cls, error: ErrorCode, message: str) -> "OperationResult":
        return cls(success=False, message=message, error=error)


def _split_known(data: dict, keys: dict[str, str]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split a JSON object into (attr -> value) for known keys and leftover extras."""
    known = {}
    extra = {}
    reverse = {json_key: attr for attr, json_key in keys.items()}
    for key, value in data.items():
        if key in reverse:
            known[reverse[key]] = value
        else:
            extra[key] = value
    return known, extra


def _to_json(obj, keys: dict[str, str]) -> dict:
    out = {}
    for attr, json_key in keys.items():
        value = getattr(obj, attr)
        if value is None:
            continue
        if hasattr(value, "to_dict"):
            value = value.to_dict()
        out[json_key] = value
    out.update(obj.extra)
    return out


@dataclass
class ConsensusRecord:
    """Persisted outcome of a negotiation, attached to the task it resolved."""
    executor_proposal: str
    reviewer_proposal: str
    final_decision: str
    decided_by: str                      # consensus, executor, reviewer, user
    aligned: bool
    rounds: int
    timestamp: str
    status: str = "completed"            # completed, timeout, cancelled
    notes: Optional[str] = None
    extra: dict = field(default_factory=dict, repr=False)

    _KEYS: ClassVar[dict[str, str]] = {
        "executor_proposal": "executorProposal",
        "reviewer_proposal": "reviewerProposal",
        "final_decision": "finalDecision",
        "decided_by": "decidedBy",
        "aligned": "aligned",
        "rounds": "rounds",
        "timestamp": "timestamp",
        "status": "status",
        "notes": "notes",
    }

    @classmethod
    def from_dict(cls, data: dict) -> "ConsensusRecord":
        known, extra = _split_known(data, cls._KEYS)
        known.setdefault("executor_proposal", "")
        known.setdefault("reviewer_proposal", "")
        known.setdefault("timestamp", "")
        return cls(**known, extra=extra)

    def to_dict(self) -> dict:
        return _to_json(self, self._KEYS)


@dataclass
class ImplementationTask:
    """A phased implementation work item (e.g. impl-007)."""
    id: str
    phase: int
    task: str
    status: str = "pending"
    description: Optional[str] = None
    files: Optional[list[str]] = None
    notes: Optional[str] = None
    passes: Optional[bool] = None
    depends_on: Optional[list[str]] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    consensus: Optional[ConsensusRecord] = None
    extra: dict = field(default_factory=dict, repr=False)

    kind: ClassVar[TaskKind] = TaskKind.IMPLEMENTATION
    _KEYS: ClassVar[dict[str, str]] = {
        "id": "id",
        "phase": "phase",
        "task": "task",
        "status": "status",
        "description": "description",
        "files": "files",
        "notes": "notes",
        "passes": "passes",
        "depends_on": "dependsOn",
        "started_at": "startedAt",
        "completed_at": "completedAt",
        "consensus": "consensus",
    }

    @property
    def title(self) -> str:
        return self.task

    @property
    def is_complete(self) -> bool:
        return self.status == "completed" or self.passes is True

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.phase, id_suffix(self.id))

    @classmethod
    def from_dict(cls, data: dict) -> "ImplementationTask":
        known, extra = _split_known(data, cls._KEYS)
        if known.get("consensus") is not None:
            known["consensus"] = ConsensusRecord.from_dict(known["consensus"])
        return cls(**known, extra=extra)

    def to_dict(self) -> dict:
        return _to_json(self, self._KEYS)


@dataclass
class UserStory:
    """A prioritized user story (e.g. US-003). Lower priority runs first."""
    id: str
    title: str
    priority: int
    passes: bool = False
    description: Optional[str] = None
    acceptance_criteria: Optional[list[str]] = None
    depends_on: Optional[list[str]] = None
    notes: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    github_issue: Optional[int] = None
    consensus: Optional[ConsensusRecord] = None
    extra: dict = field(default_factory=dict, repr=False)

    kind: ClassVar[TaskKind] = TaskKind.STORY
    _KEYS: ClassVar[dict[str, str]] = {
        "id": "id",
        "title": "title",
        "description": "description",
        "acceptance_criteria": "acceptanceCriteria",
        "priority": "priority",
        "passes": "passes",
        "depends_on": "dependsOn",
        "notes": "notes",
        "started_at": "startedAt",
        "completed_at": "completedAt",
        "github_issue": "githubIssue",
        "consensus": "consensus",
    }

    @property
    def is_complete(self) -> bool:
        return self.passes is True

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.priority, id_suffix(self.id))

    @classmethod
    def from_dict(cls, data: dict) -> "UserStory":
        known, extra = _split_known(data, cls._KEYS)
        if known.get("consensus") is not None:
            known["consensus"] = ConsensusRecord.from_dict(known["consensus"])
        return cls(**known, extra=extra)

    def to_dict(self) -> dict:
        return _to_json(self, self._KEYS)


Task = Union[ImplementationTask, UserStory]


@dataclass
class ReviewTask:
    """A pre-implementation validation question, tracked apart from the tasks."""
    id: str
    category: str
    check: str
    status: str = "pending"
    task: Optional[str] = None
    finding: Optional[str] = None
    action_required: Optional[str] = None
    extra: dict = field(default_factory=dict, repr=False)

    _KEYS: ClassVar[dict[str, str]] = {
        "id": "id",
        "category": "category",
        "task": "task",
        "check": "check",
        "status": "status",
        "finding": "finding",
        "action_required": "actionRequired",
    }

    @classmethod
    def from_dict(cls, data: dict) -> "ReviewTask":
        known, extra = _split_known(data, cls._KEYS)
        return cls(**known, extra=extra)

    def to_dict(self) -> dict:
        return _to_json(self, self._KEYS)


@dataclass
class Prd:
    """The task-list document: aggregate root for tasks and review tasks."""
    name: str
    version: str
    description: str
    status: str
    implementation_tasks: Optional[list[ImplementationTask]] = None
    user_stories: Optional[list[UserStory]] = None
    review_tasks: Optional[list[ReviewTask]] = None
    review_tasks_key: str = "reviewTasks"    # Older documents use review_tasks
    branch_name: Optional[str] = None
    mode: Optional[str] = None               # feature, backlog
    github_repo: Optional[str] = None
    plugins: Optional[dict] = None
    metadata: Optional[dict] = None
    extra: dict = field(default_factory=dict, repr=False)

    _KEYS: ClassVar[dict[str, str]] = {
        "name": "name",
        "version": "version",
        "description": "description",
        "status": "status",
        "branch_name": "branchName",
        "mode": "mode",
        "github_repo": "githubRepo",
        "plugins": "plugins",
        "metadata": "metadata",
    }

    @property
    def task_kind(self) -> Optional[TaskKind]:
        """Which collection this document populates, if any."""
        if self.implementation_tasks is not None:
            return TaskKind.IMPLEMENTATION
        if self.user_stories is not None:
            return TaskKind.STORY
        return None

    @property
    def tasks(self) -> list[Task]:
        """The populated task collection (live list), or an empty list."""
        kind = self.task_kind
        if kind is TaskKind.IMPLEMENTATION:
            return self.implementation_tasks
        if kind is TaskKind.STORY:
            return self.user_stories
        return []

    @classmethod
    def from_dict(cls, data: dict) -> "Prd":
        data = dict(data)
        impl = data.pop("implementation_tasks", None)
        stories = data.pop("userStories", None)

        review_key = "reviewTasks"
        reviews = data.pop("reviewTasks", None)
        if reviews is None and "review_tasks" in data:
            review_key = "review_tasks"
            reviews = data.pop("review_tasks")

        known, extra = _split_known(data, cls._KEYS)
        return cls(
            **known,
            implementation_tasks=[ImplementationTask.from_dict(t) for t in impl] if impl is not None else None,
            user_stories=[UserStory.from_dict(s) for s in stories] if stories is not None else None,
            review_tasks=[ReviewTask.from_dict(r) for r in reviews] if reviews is not None else None,
            review_tasks_key=review_key,
            extra=extra,
        )

    def to_dict(self) -> dict:
        out = {}
        for attr in ("name", "version", "description", "status", "branch_name", "mode", "github_repo"):
            value = getattr(self, attr)
            if value is not None:
                out[self._KEYS[attr]] = value
        if self.review_tasks is not None:
            out[self.review_tasks_key] = [r.to_dict() for r in self.review_tasks]
        if self.implementation_tasks is not None:
            out["implementation_tasks"] = [t.to_dict() for t in self.implementation_tasks]
        if self.user_stories is not None:
            out["userStories"] = [s.to_dict() for s in self.user_stories]
        if self.plugins is not None:
            out["plugins"] = self.plugins
        if self.metadata is not None:
            out["metadata"] = self.metadata
        out.update(self.extra)
        return out
