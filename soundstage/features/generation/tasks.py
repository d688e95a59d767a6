"""
Dispatched generation tasks.

Tasks only track what the gateway is doing; they carry no credits. Once a
task reaches complete or failed it is never updated again.
"""
import threading
from typing import Any, Dict, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from soundstage.core.database import generation_tasks, get_db_session
from soundstage.core.errors import ConflictError
from soundstage.features.credits.store import as_utc, utcnow
from soundstage.models.credits import OperationKind
from soundstage.models.generation import GenerationTask, TaskStatus

TERMINAL_STATUSES = [status.value for status in TaskStatus if status.is_terminal]


def _task_from_row(row) -> GenerationTask:
    return GenerationTask(
        task_id=row.task_id,
        account_id=row.account_id,
        operation_kind=OperationKind(row.operation_kind),
        status=TaskStatus(row.status),
        credits_charged=row.credits_charged,
        result=row.result,
        error=row.error,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


class SqlTaskStore:
    def create(self, task: GenerationTask) -> GenerationTask:
        now = utcnow()
        try:
            with get_db_session() as session:
                session.execute(
                    insert(generation_tasks).values(
                        task_id=task.task_id,
                        account_id=task.account_id,
                        operation_kind=task.operation_kind.value,
                        status=task.status.value,
                        credits_charged=task.credits_charged,
                        result=task.result,
                        error=task.error,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError:
            raise ConflictError(f"Task already recorded: {task.task_id}", details={"task_id": task.task_id})
        return task.model_copy(update={"created_at": now, "updated_at": now})

    def get(self, task_id: str) -> Optional[GenerationTask]:
        with get_db_session() as session:
            row = session.execute(
                select(generation_tasks).where(generation_tasks.c.task_id == task_id)
            ).first()
            return _task_from_row(row) if row else None

    def update_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> bool:
        """Apply the update unless the task is already terminal. Returns whether it applied."""
        values: Dict[str, Any] = {"status": status.value, "updated_at": utcnow()}
        if result is not None:
            values["result"] = result
        if error is not None:
            values["error"] = error
        with get_db_session() as session:
            outcome = session.execute(
                update(generation_tasks)
                .where(generation_tasks.c.task_id == task_id)
                .where(generation_tasks.c.status.notin_(TERMINAL_STATUSES))
                .values(**values)
            )
            return outcome.rowcount == 1


class InMemoryTaskStore:
    def __init__(self):
        self._tasks: Dict[str, GenerationTask] = {}
        self._lock = threading.Lock()

    def create(self, task: GenerationTask) -> GenerationTask:
        now = utcnow()
        stored = task.model_copy(update={"created_at": now, "updated_at": now})
        with self._lock:
            if task.task_id in self._tasks:
                raise ConflictError(f"Task already recorded: {task.task_id}", details={"task_id": task.task_id})
            self._tasks[task.task_id] = stored
        return stored

    def get(self, task_id: str) -> Optional[GenerationTask]:
        return self._tasks.get(task_id)

    def update_status(self, task_id, status, *, result=None, error=None) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status.is_terminal:
                return False
            changes: Dict[str, Any] = {"status": status, "updated_at": utcnow()}
            if result is not None:
                changes["result"] = result
            if error is not None:
                changes["error"] = error
            self._tasks[task_id] = task.model_copy(update=changes)
            return True
