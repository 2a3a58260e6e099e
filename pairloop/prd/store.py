"""
Task store: the in-memory mirror of one PRD document.

All mutations go through TaskStore methods. Each one marks the document
dirty and re-arms a single debounced write, so a burst of edits lands on
disk as one atomic write. Call flush() (or close()) before teardown to
persist the last mutation. A mutation that would leave the document
failing its schema is undone and reported as a failed OperationResult.

Usage:
    from pairloop.prd.store import TaskStore

    store = TaskStore()
    store.load(Path(".agents/tasks/prd-auth.json"))
    result = store.add_issue("Add retry logic")
    store.mark_complete(result.task_id)
    store.close()
"""

import asyncio
import copy
import json
import logging
import os
import re
import stat
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from pairloop.lib.validate import ValidationError, validate, validate_before_write
from pairloop.prd.models import (
    DEFAULT_COMPLETION_PROMISE,
    PRD_STATUSES,
    ConsensusRecord,
    ErrorCode,
    ImplementationTask,
    OperationResult,
    Prd,
    ReviewTask,
    Task,
    TaskKind,
    UserStory,
    id_prefix,
    id_suffix,
    now_iso,
)

logger = logging.getLogger(__name__)

DEFAULT_TASKS_DIR = ".agents/tasks"
DEFAULT_DEBOUNCE_MS = 500
SCHEMA_NAME = "prd"

# Only these implementation-task statuses are eligible to run next
_RUNNABLE_STATUSES = ("pending", "in_progress")


class PrdError(Exception):
    """Base class for PRD load/save failures."""


class PrdNotFoundError(PrdError):
    """PRD file does not exist."""

    def __init__(self, path: Path):
        self.path = path
        super().__init__(f"PRD file not found: {path}")


class PrdParseError(PrdError):
    """PRD file is not valid UTF-8 JSON."""

    def __init__(self, path: Path, detail: str):
        self.path = path
        super().__init__(f"Invalid JSON in {path}: {detail}")


class PrdExistsError(PrdError):
    """A PRD with the same slug is already on disk."""

    def __init__(self, path: Path):
        self.path = path
        super().__init__(f"PRD already exists: {path}")


class PrdNotLoadedError(PrdError):
    """Operation needs a loaded PRD."""

    def __init__(self):
        super().__init__("No PRD loaded")


class PrdValidationError(ValidationError):
    """PRD document does not match the schema."""


def generate_prd_slug(name: str) -> str:
    """Turn a PRD name into a file-name slug, capped at 50 characters."""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug[:50]


def find_prd_files(directory: Path) -> list[Path]:
    """Return prd-*.json files in directory, sorted by name."""
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.glob("prd-*.json") if p.is_file())


def _note_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _snapshot(obj) -> Callable[[], None]:
    """Return a function that puts obj's fields back as they are now."""
    saved = copy.deepcopy(vars(obj))

    def restore() -> None:
        vars(obj).clear()
        vars(obj).update(saved)

    return restore


def _bad_rank(value) -> bool:
    return isinstance(value, bool) or not isinstance(value, int) or value < 0


def _target_mode(path: Path) -> int:
    """Permissions for the file about to land at path."""
    try:
        return stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


def _write_json_atomic(path: Path, data: dict) -> None:
    """Write JSON via a temp file in the same directory, then rename over path."""
    path.parent.mkdir(parents=True, exist_ok=True)
    mode = _target_mode(path)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        # mkstemp creates 0600; the replaced file keeps its own permissions
        os.fchmod(fd, mode)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps(data, indent=2) + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)


class TaskStore:
    """Authoritative in-memory PRD with debounced, atomic write-back."""

    def __init__(
        self,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        on_update: Optional[Callable[[Prd], None]] = None,
    ):
        """
        Args:
            debounce_ms: Quiet period before a scheduled write hits disk
            on_update: Optional callback(prd) called after every mutation
        """
        self.debounce_ms = debounce_ms
        self.on_update = on_update
        self.prd: Optional[Prd] = None
        self.path: Optional[Path] = None
        self.dirty = False
        self._save_handle: Optional[asyncio.TimerHandle] = None

    # --- lifecycle ---------------------------------------------------------

    @classmethod
    def create(
        cls,
        name: str,
        description: str,
        directory: Path | str = DEFAULT_TASKS_DIR,
        **kwargs,
    ) -> "TaskStore":
        """Write a new, empty PRD as prd-<slug>.json and return a store holding it.

        Raises:
            PrdExistsError: A PRD with the same slug is already in directory
        """
        directory = Path(directory)
        path = directory / f"prd-{generate_prd_slug(name)}.json"
        if path.exists():
            raise PrdExistsError(path)
        now = now_iso()
        prd = Prd(
            name=name,
            version="0.1.0",
            description=description,
            status="planning",
            implementation_tasks=[],
            metadata={
                "createdAt": now,
                "updatedAt": now,
                "completionPromise": DEFAULT_COMPLETION_PROMISE,
            },
        )

        store = cls(**kwargs)
        store.prd = prd
        store.path = path
        store.dirty = True
        store.flush()
        logger.info(f"Created PRD {path}")
        return store

    def load(self, path: Path) -> Prd:
        """Load a PRD from disk, replacing any in-memory state.

        Raises:
            PrdNotFoundError: File does not exist
            PrdParseError: File is not valid UTF-8 JSON
            PrdValidationError: Document does not match the PRD schema
        """
        path = Path(path)
        if not path.exists():
            raise PrdNotFoundError(path)

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise PrdParseError(path, str(e)) from None

        try:
            validate(data, SCHEMA_NAME)
        except ValidationError as e:
            raise PrdValidationError(e.schema_name, f"{path}: {e}", e.path) from None

        self._cancel_pending()
        self.prd = Prd.from_dict(data)
        self.path = path
        self.dirty = False
        logger.debug(f"Loaded PRD {path} ({len(self.prd.tasks)} tasks)")
        return self.prd

    def save(self) -> None:
        """Schedule a debounced write. Writes immediately if no event loop is running."""
        self._require_loaded()
        self.dirty = True

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write()
            return

        self._cancel_pending()
        self._save_handle = loop.call_later(self.debounce_ms / 1000, self._write_scheduled)

    def flush(self) -> None:
        """Cancel any scheduled write and persist now if there are unsaved changes."""
        self._require_loaded()
        self._cancel_pending()
        if self.dirty:
            self._write()

    def close(self) -> None:
        """Final flush before the store is discarded."""
        if self.prd is not None:
            self.flush()

    def _require_loaded(self) -> None:
        if self.prd is None or self.path is None:
            raise PrdNotLoadedError()

    def _cancel_pending(self) -> None:
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None

    def _write_scheduled(self) -> None:
        self._save_handle = None
        if not self.dirty or self.prd is None:
            return
        try:
            self._write()
        except (OSError, ValidationError):
            # Stays dirty so the next flush() retries and surfaces the error
            logger.exception(f"Autosave of {self.path} failed")

    def _write(self) -> None:
        if self.prd.metadata is None:
            self.prd.metadata = {}
        self.prd.metadata["updatedAt"] = now_iso()

        data = self.prd.to_dict()
        validate_before_write(data, SCHEMA_NAME, self.path)
        _write_json_atomic(self.path, data)
        self.dirty = False
        logger.debug(f"Saved PRD {self.path}")

    def _changed(self) -> None:
        self.save()
        if self.on_update:
            self.on_update(self.prd)

    def _commit(self, undo: Callable[[], None], result: OperationResult) -> OperationResult:
        """Keep a mutation and schedule its write, or undo it if the PRD no longer validates."""
        try:
            validate(self.prd.to_dict(), SCHEMA_NAME)
        except ValidationError as e:
            undo()
            where = f" at {e.path}" if e.path else ""
            logger.warning(f"Rejected change to {self.path}: {e.message}{where}")
            return OperationResult.fail(ErrorCode.INVALID_DOCUMENT, f"Change rejected: {e.message}{where}")

        self._changed()
        return result

    # --- queries -----------------------------------------------------------

    def get_all_tasks(self) -> list[Task]:
        if self.prd is None:
            return []
        return list(self.prd.tasks)

    def get_task(self, task_id: str) -> Optional[Task]:
        for task in self.get_all_tasks():
            if task.id == task_id:
                return task
        return None

    def get_next_task(self) -> Optional[Task]:
        """Pick the next runnable task.

        A task is runnable when it is not complete and every id in its
        depends_on list names a completed task. Implementation tasks must also
        be pending or in progress. Among runnable tasks the lowest
        (phase, id suffix) or (priority, id suffix) wins.
        """
        tasks = self.get_all_tasks()
        done = {t.id for t in tasks if t.is_complete}

        runnable = []
        for task in tasks:
            if task.is_complete:
                continue
            if task.kind is TaskKind.IMPLEMENTATION and task.status not in _RUNNABLE_STATUSES:
                continue
            if task.depends_on and not all(dep in done for dep in task.depends_on):
                continue
            runnable.append(task)

        if not runnable:
            return None
        return min(runnable, key=lambda t: t.sort_key)

    def get_progress(self) -> dict:
        """Completion counts; percentage is 0 for an empty task list."""
        tasks = self.get_all_tasks()
        total = len(tasks)
        completed = sum(1 for t in tasks if t.is_complete)
        return {
            "total": total,
            "completed": completed,
            "remaining": total - completed,
            "percentage": round(completed / total * 100) if total else 0,
        }

    def is_complete(self) -> bool:
        tasks = self.get_all_tasks()
        return all(t.is_complete for t in tasks)

    # --- task mutations ----------------------------------------------------

    def _generate_next_id(self) -> str:
        tasks = self.get_all_tasks()
        if not tasks:
            return "US-001" if self.prd.task_kind is TaskKind.STORY else "impl-001"

        prefix = id_prefix(tasks[0].id)
        next_num = max(id_suffix(t.id) for t in tasks) + 1
        return f"{prefix}{next_num:03d}"

    def add_issue(
        self,
        title: str,
        description: Optional[str] = None,
        phase: Optional[int] = None,
        priority: Optional[int] = None,
        files: Optional[list[str]] = None,
    ) -> OperationResult:
        """Append a new task or story with the next id in sequence."""
        if self.prd is None:
            return OperationResult.fail(ErrorCode.NO_PRD, "No PRD loaded")

        kind = self.prd.task_kind
        if kind is None:
            return OperationResult.fail(ErrorCode.NO_TASKS, "PRD has no task collection")

        for label, value in (("phase", phase), ("priority", priority)):
            if value is not None and _bad_rank(value):
                return OperationResult.fail(
                    ErrorCode.INVALID_PRIORITY,
                    f"Invalid {label} {value!r}: must be a non-negative integer",
                )

        new_id = self._generate_next_id()

        if kind is TaskKind.IMPLEMENTATION:
            tasks = self.prd.implementation_tasks
            if phase is None:
                phase = max((t.phase for t in tasks), default=0)
            tasks.append(ImplementationTask(
                id=new_id,
                phase=phase,
                task=title,
                status="pending",
                description=description or None,
                files=files or None,
            ))
            message = f"Created task {new_id}: {title}"
        else:
            tasks = self.prd.user_stories
            if priority is None:
                priority = max((s.priority for s in tasks), default=0) + 1
            tasks.append(UserStory(
                id=new_id,
                title=title,
                description=description or title,
                acceptance_criteria=[],
                priority=priority,
                passes=False,
            ))
            message = f"Created story {new_id}: {title}"

        result = self._commit(tasks.pop, OperationResult.ok(message, task_id=new_id))
        if result.success:
            logger.info(message)
        return result

    def _find(self, task_id: str) -> tuple[Optional[Task], Optional[OperationResult]]:
        """Look up a task, or build the failure result explaining why not."""
        if self.prd is None:
            return None, OperationResult.fail(ErrorCode.NO_PRD, "No PRD loaded")
        task = self.get_task(task_id)
        if task is None:
            return None, OperationResult.fail(ErrorCode.TASK_NOT_FOUND, f"Task not found: {task_id}")
        return task, None

    def update_note(self, task_id: str, note: str, append: bool = True) -> OperationResult:
        """Add a timestamped note, or replace existing notes when append is False."""
        task, failure = self._find(task_id)
        if failure:
            return failure

        undo = _snapshot(task)
        line = f"[{_note_timestamp()}] {note}"
        if append and task.notes:
            task.notes = f"{task.notes}\n{line}"
        else:
            task.notes = line

        return self._commit(undo, OperationResult.ok(f"Updated note for {task_id}", task_id=task_id))

    def update_priority(self, task_id: str, priority: int) -> OperationResult:
        """Set the phase (implementation task) or priority (story)."""
        task, failure = self._find(task_id)
        if failure:
            return failure
        if _bad_rank(priority):
            return OperationResult.fail(
                ErrorCode.INVALID_PRIORITY,
                f"Invalid priority {priority!r} for {task_id}: must be a non-negative integer",
            )

        undo = _snapshot(task)
        if task.kind is TaskKind.IMPLEMENTATION:
            task.phase = priority
        elif task.kind is TaskKind.STORY:
            task.priority = priority
        else:
            raise AssertionError(f"Unhandled task kind: {task.kind}")

        return self._commit(
            undo, OperationResult.ok(f"Updated priority for {task_id} to {priority}", task_id=task_id)
        )

    def _complete(self, task: Task, timestamp: str) -> None:
        if task.kind is TaskKind.IMPLEMENTATION:
            task.status = "completed"
            task.passes = True
        elif task.kind is TaskKind.STORY:
            task.passes = True
        else:
            raise AssertionError(f"Unhandled task kind: {task.kind}")
        task.completed_at = timestamp

    def mark_complete(self, task_id: str) -> OperationResult:
        task, failure = self._find(task_id)
        if failure:
            return failure

        undo = _snapshot(task)
        self._complete(task, now_iso())
        result = self._commit(undo, OperationResult.ok(f"Marked {task_id} as completed", task_id=task_id))
        if result.success:
            logger.info(f"Marked {task_id} as completed")
        return result

    def mark_skipped(self, task_id: str, reason: Optional[str] = None) -> OperationResult:
        """Complete a task without doing it, leaving a note saying so."""
        task, failure = self._find(task_id)
        if failure:
            return failure

        undo = _snapshot(task)
        skip_note = f"[{_note_timestamp()}] Skipped by user" + (f": {reason}" if reason else "")
        task.notes = f"{task.notes}\n{skip_note}" if task.notes else skip_note
        self._complete(task, now_iso())

        message = f"Skipped {task_id}" + (f": {reason}" if reason else "")
        result = self._commit(undo, OperationResult.ok(message, task_id=task_id))
        if result.success:
            logger.info(message)
        return result

    def start_task(self, task_id: str) -> OperationResult:
        task, failure = self._find(task_id)
        if failure:
            return failure

        undo = _snapshot(task)
        if task.kind is TaskKind.IMPLEMENTATION:
            task.status = "in_progress"
        task.started_at = now_iso()

        return self._commit(undo, OperationResult.ok(f"Started task {task_id}", task_id=task_id))

    def attach_consensus(self, task_id: str, record: ConsensusRecord) -> OperationResult:
        """Store the outcome of a negotiation on the task it resolved."""
        task, failure = self._find(task_id)
        if failure:
            return failure

        undo = _snapshot(task)
        task.consensus = record
        return self._commit(undo, OperationResult.ok(f"Recorded consensus for {task_id}", task_id=task_id))

    def update_status(self, status: str) -> OperationResult:
        """Set the document-level status (planning, in_progress, ...)."""
        if self.prd is None:
            return OperationResult.fail(ErrorCode.NO_PRD, "No PRD loaded")
        if status not in PRD_STATUSES:
            return OperationResult.fail(
                ErrorCode.INVALID_STATUS,
                f"Invalid status '{status}'. Expected one of: {', '.join(PRD_STATUSES)}",
            )

        previous = self.prd.status
        self.prd.status = status
        return self._commit(
            lambda: setattr(self.prd, "status", previous),
            OperationResult.ok(f"Updated PRD status to {status}"),
        )

    # --- review tasks ------------------------------------------------------

    def get_review_tasks(self) -> list[ReviewTask]:
        if self.prd is None or self.prd.review_tasks is None:
            return []
        return list(self.prd.review_tasks)

    def get_pending_review_tasks(self) -> list[ReviewTask]:
        return [r for r in self.get_review_tasks() if r.status == "pending"]

    def update_review_finding(
        self,
        review_id: str,
        finding: str,
        action_required: Optional[str] = None,
    ) -> OperationResult:
        """Record what a review found and mark it completed."""
        if self.prd is None:
            return OperationResult.fail(ErrorCode.NO_PRD, "No PRD loaded")

        review = next((r for r in self.get_review_tasks() if r.id == review_id), None)
        if review is None:
            return OperationResult.fail(ErrorCode.REVIEW_NOT_FOUND, f"Review task not found: {review_id}")

        undo = _snapshot(review)
        review.finding = finding
        review.status = "completed"
        if action_required is not None:
            review.action_required = action_required

        return self._commit(undo, OperationResult.ok(f"Updated review {review_id}", task_id=review_id))
