"""
Flat-file task store.

The whole collection lives in one JSON array. Every operation reloads the file,
and every mutation rewrites it wholesale through a temp file + rename, so a
crash mid-write never leaves a truncated file behind. Mutations are serialised
by a per-store lock; FastAPI runs sync routes in a thread pool, and without it
two concurrent writers would each save their own snapshot and lose the other's
change.
"""
import json
import logging
import os
import shutil
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import ValidationError as SchemaError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

DEFAULT_COMPLETION_KEYWORDS = ("done", "finished", "complete", "completed")


class TaskError(Exception):
    status_code = 500


class ValidationError(TaskError):
    status_code = 400


class NotFound(TaskError):
    status_code = 404


class Task(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: int
    title: str
    completed: bool = False
    created_at: str
    updated_at: str
    due_date: Optional[str] = None

    @field_validator("due_date", mode="before")
    @classmethod
    def _due_date_as_text(cls, value):
        # Older files may hold epoch numbers here; keep them rather than drop the task.
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class TaskView(Task):
    """A task as returned to clients, with the derived overdue flag."""

    is_overdue: bool = False


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 string. Raises ValueError if it isn't one."""
    text = value.strip()
    if text[-1:] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def never_complete(title: str) -> bool:
    return False


def keyword_rule(keywords: Iterable[str] = DEFAULT_COMPLETION_KEYWORDS) -> Callable[[str], bool]:
    """Completion rule that marks a task done when its title mentions any keyword."""
    words = tuple(k.strip().lower() for k in keywords if k.strip())

    def rule(title: str) -> bool:
        lowered = title.lower()
        return any(word in lowered for word in words)

    return rule


def is_overdue(task: Task, now: datetime) -> bool:
    if not task.due_date or task.completed:
        return False
    try:
        return parse_timestamp(task.due_date) < now
    except ValueError:
        # Hand-edited file with a junk due date; never overdue.
        return False


def _normalize_due_date(value: str) -> str:
    try:
        return format_timestamp(parse_timestamp(value))
    except (ValueError, OverflowError):
        raise ValidationError(f"Invalid due date: {value!r}") from None


class TaskStore:
    def __init__(
        self,
        path: str | Path,
        completion_rule: Callable[[str], bool] = never_complete,
        due_soon: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.path = Path(path)
        self.completion_rule = completion_rule
        self.due_soon = due_soon
        self.clock = clock
        self._write_lock = threading.Lock()

    # -- persistence ---------------------------------------------------------

    def load(self) -> list[Task]:
        try:
            raw = self.path.read_bytes()
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning("Could not read %s (%s); starting from an empty list", self.path, e)
            return []
        try:
            records = json.loads(raw)
        except ValueError as e:
            logger.warning("Ignoring unparseable task data in %s (%s); starting from an empty list", self.path, e)
            return []
        if not isinstance(records, list):
            logger.warning("Ignoring task data in %s: expected a JSON array", self.path)
            return []

        # Records written before timestamps existed get the file's mtime.
        fallback = format_timestamp(datetime.fromtimestamp(mtime, timezone.utc))
        tasks = []
        for i, record in enumerate(records):
            if isinstance(record, dict):
                record.setdefault("createdAt", fallback)
                record.setdefault("updatedAt", record["createdAt"])
            try:
                tasks.append(Task.model_validate(record))
            except SchemaError as e:
                logger.warning("Skipping invalid task record #%d in %s (%d errors)", i, self.path, e.error_count())
        return tasks

    def dumps(self, tasks: list[Task]) -> str:
        return json.dumps(
            [t.model_dump(by_alias=True) for t in tasks],
            indent=2,
            ensure_ascii=False,
        )

    def save(self, tasks: list[Task]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(self.dumps(tasks))
                f.flush()
                os.fsync(f.fileno())
            # mkstemp creates 0600; keep the permissions the data file already had.
            if self.path.exists():
                shutil.copymode(self.path, tmp)
            else:
                os.chmod(tmp, 0o644)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    # -- queries -------------------------------------------------------------

    def list_tasks(
        self,
        completed: Union[bool, str, None] = None,
        search: Optional[str] = None,
        sort: Optional[str] = None,
    ) -> list[TaskView]:
        """
        Filter and order the collection.

        ``completed`` may be a bool or the raw query text. Text is compared
        against "true"/"false" as written, so any other value matches nothing.
        """
        tasks = self.load()
        if completed is not None:
            wanted = str(completed).lower() if isinstance(completed, bool) else completed
            tasks = [t for t in tasks if str(t.completed).lower() == wanted]
        if search:
            needle = search.lower()
            tasks = [t for t in tasks if needle in t.title.lower()]
        if sort in ("asc", "desc"):
            tasks = sorted(tasks, key=lambda t: t.created_at, reverse=sort == "desc")
        now = self.clock()
        return [TaskView(**t.model_dump(), is_overdue=is_overdue(t, now)) for t in tasks]

    def stats(self) -> dict:
        tasks = self.load()
        now = self.clock()
        return {
            "total": len(tasks),
            "completed": sum(1 for t in tasks if t.completed),
            "overdue": sum(1 for t in tasks if is_overdue(t, now)),
        }

    # -- mutations -----------------------------------------------------------

    def add(self, title: Optional[str], due_date: Optional[str] = None) -> Task:
        title = (title or "").strip()
        if not title:
            raise ValidationError("Task title is required")
        if due_date:
            due_date = _normalize_due_date(due_date)
        else:
            due_date = None

        with self._write_lock:
            tasks = self.load()
            now = self.clock()
            stamp = format_timestamp(now)
            task = Task(
                id=max((t.id for t in tasks), default=0) + 1,
                title=title,
                completed=bool(self.completion_rule(title)),
                created_at=stamp,
                updated_at=stamp,
                due_date=due_date,
            )
            tasks.append(task)
            self.save(tasks)

        logger.info("Added task %d: %r", task.id, task.title)
        if due_date:
            remaining = parse_timestamp(due_date) - now
            if timedelta(0) < remaining < self.due_soon:
                logger.info("Reminder: task %r is due soon", task.title)
        return task

    def mark_complete(self, task_id: int) -> Task:
        with self._write_lock:
            tasks = self.load()
            task = self._find(tasks, task_id)
            if not task.completed:
                task.completed = True
                task.updated_at = format_timestamp(self.clock())
                self.save(tasks)
        return task

    def update(
        self,
        task_id: int,
        title: Optional[str] = None,
        due_date: Optional[str] = None,
        clear_due_date: bool = False,
    ) -> Task:
        if due_date:
            due_date = _normalize_due_date(due_date)

        with self._write_lock:
            tasks = self.load()
            task = self._find(tasks, task_id)
            changed = False

            title = (title or "").strip()
            if title and title != task.title:
                task.title = title
                changed = True
            if due_date and due_date != task.due_date:
                task.due_date = due_date
                changed = True
            elif clear_due_date and not due_date and task.due_date is not None:
                task.due_date = None
                changed = True

            if changed:
                task.updated_at = format_timestamp(self.clock())
                self.save(tasks)
        return task

    def remove(self, task_id: int) -> None:
        with self._write_lock:
            tasks = self.load()
            index = self._index(tasks, task_id)
            removed = tasks.pop(index)
            self.save(tasks)
        logger.info("Removed task %d: %r", removed.id, removed.title)

    @staticmethod
    def _index(tasks: list[Task], task_id: int) -> int:
        for i, t in enumerate(tasks):
            if t.id == task_id:
                return i
        raise NotFound("Task not found")

    def _find(self, tasks: list[Task], task_id: int) -> Task:
        return tasks[self._index(tasks, task_id)]
