"""
Tenant-scoped repositories over the key-value store.

Every record key carries the owning user id, so a repository call can only
ever see the records of the tenant it was called for:

    subject:<user_id>:<subject_id>
    task:<user_id>:<task_id>
    user:<user_id>
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from database import KeyValueStore
from errors import NotFoundError, ValidationError
from schemas import (
    Profile,
    ProfileUpdate,
    Subject,
    SubjectCreate,
    SubjectUpdate,
    Task,
    TaskCreate,
    TaskUpdate,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

IMMUTABLE_FIELDS = ("id", "user_id", "created_at")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _first_error(exc: PydanticValidationError) -> str:
    err = exc.errors()[0]
    field = ".".join(str(p) for p in err.get("loc", ())) or "value"
    return f"Invalid {field}: {err.get('msg', 'invalid value')}"


class _EntityRepository:
    prefix: str = ""
    model: Type[BaseModel] = BaseModel
    label: str = "Entity"

    def __init__(self, store: KeyValueStore, clock: Clock = utcnow):
        self.store = store
        self.clock = clock

    def key(self, user_id: str, entity_id: str) -> str:
        return f"{self.prefix}:{user_id}:{entity_id}"

    def _build(self, data: Dict[str, Any]):
        try:
            return self.model.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(_first_error(e)) from e

    def _save(self, user_id: str, entity: BaseModel) -> None:
        self.store.set(self.key(user_id, entity.id), entity.model_dump(mode="json"))

    def list(self, user_id: str) -> List[Any]:
        records = self.store.get_by_prefix(f"{self.prefix}:{user_id}:")
        items = [self.model.model_validate(r) for r in records]
        items.sort(key=lambda e: (e.created_at, e.id))
        return items

    def get(self, user_id: str, entity_id: str):
        record = self.store.get(self.key(user_id, entity_id))
        if record is None:
            raise NotFoundError(f"{self.label} not found")
        return self.model.model_validate(record)

    def _merge(self, user_id: str, entity_id: str, fields: Dict[str, Any]):
        current = self.get(user_id, entity_id)
        merged = current.model_dump()
        merged.update({k: v for k, v in fields.items() if k not in IMMUTABLE_FIELDS})
        updated = self._build(merged)
        self._save(user_id, updated)
        return updated

    def delete(self, user_id: str, entity_id: str) -> None:
        # deleting a missing key is a no-op
        self.store.delete(self.key(user_id, entity_id))


class SubjectRepository(_EntityRepository):
    prefix = "subject"
    model = Subject
    label = "Subject"

    def __init__(self, store: KeyValueStore, tasks: "TaskRepository", clock: Clock = utcnow):
        super().__init__(store, clock)
        self.tasks = tasks

    def create(self, user_id: str, draft: SubjectCreate) -> Subject:
        if not draft.name or not draft.color_tag:
            raise ValidationError("Name and color are required")
        subject = self._build(
            {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "name": draft.name,
                "color_tag": draft.color_tag,
                "shared_users": draft.shared_users or [],
                "created_at": self.clock(),
            }
        )
        self._save(user_id, subject)
        logger.info("subject created user=%s id=%s", user_id, subject.id)
        return subject

    def update(self, user_id: str, subject_id: str, changes: SubjectUpdate) -> Subject:
        return self._merge(user_id, subject_id, changes.model_dump(exclude_unset=True))

    def delete(self, user_id: str, subject_id: str) -> None:
        """
        Delete a subject and every task that references it.

        Tasks go first, one by one, then the subject. There is no transaction:
        a failure part way leaves the subject and the remaining tasks in place,
        and repeating the call finishes the job.
        """
        orphans = [t for t in self.tasks.list(user_id) if t.subject_id == subject_id]
        for task in orphans:
            self.tasks.delete(user_id, task.id)
        super().delete(user_id, subject_id)
        logger.info("subject deleted user=%s id=%s cascaded_tasks=%d", user_id, subject_id, len(orphans))


class TaskRepository(_EntityRepository):
    prefix = "task"
    model = Task
    label = "Task"

    def create(self, user_id: str, draft: TaskCreate) -> Task:
        if not draft.title or not draft.type or not draft.priority or not draft.due_date:
            raise ValidationError("Title, type, priority, and due_date are required")
        task = self._build(
            {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "subject_id": draft.subject_id,
                "title": draft.title,
                "description": draft.description or "",
                "type": draft.type,
                "priority": draft.priority,
                "due_date": draft.due_date,
                "status": draft.status or "to-do",
                "created_at": self.clock(),
            }
        )
        self._save(user_id, task)
        logger.info("task created user=%s id=%s subject=%s", user_id, task.id, task.subject_id)
        return task

    def update(self, user_id: str, task_id: str, changes: TaskUpdate) -> Task:
        return self._merge(user_id, task_id, changes.model_dump(exclude_unset=True))


class ProfileRepository:
    def __init__(self, store: KeyValueStore, clock: Clock = utcnow):
        self.store = store
        self.clock = clock

    @staticmethod
    def key(user_id: str) -> str:
        return f"user:{user_id}"

    def create(self, user_id: str, email: str, name: str) -> Profile:
        profile = Profile(id=user_id, email=email, name=name, avatar=None, created_at=self.clock())
        self.store.set(self.key(user_id), profile.model_dump(mode="json"))
        return profile

    def get(self, user_id: str) -> Profile:
        record = self.store.get(self.key(user_id))
        if record is None:
            raise NotFoundError("Profile not found")
        return Profile.model_validate(record)

    def update(self, user_id: str, changes: ProfileUpdate) -> Profile:
        """Only name and avatar change; an empty name keeps the old one."""
        profile = self.get(user_id)
        supplied = changes.model_dump(exclude_unset=True)
        updates: Dict[str, Any] = {}
        if supplied.get("name"):
            updates["name"] = supplied["name"]
        if "avatar" in supplied:
            updates["avatar"] = supplied["avatar"]
        updated = profile.model_copy(update=updates)
        self.store.set(self.key(user_id), updated.model_dump(mode="json"))
        return updated
