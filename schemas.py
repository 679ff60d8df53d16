"""
Data Schemas for the Study Tracker

Records live in the key-value store under tenant-scoped keys:
- Subject -> "subject:<user_id>:<id>"
- Task    -> "task:<user_id>:<id>"
- Profile -> "user:<user_id>"

The same models are used by the gateway for validation and by the client to
parse responses.
"""

from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

TaskType = Literal["assignment", "quiz", "project"]
Priority = Literal["low", "medium", "high"]
TaskStatus = Literal["to-do", "in-progress", "done"]

TASK_STATUSES = ("to-do", "in-progress", "done")


def _dedupe(values: List[str]) -> List[str]:
    seen = set()
    out = []
    for v in values:
        if v not in seen:
            seen.add(v)
            out.append(v)
    return out


# Subjects
class Subject(BaseModel):
    id: str
    user_id: str
    name: str = Field(..., min_length=1, max_length=200)
    color_tag: str = Field(..., min_length=1)
    shared_users: List[str] = []
    created_at: datetime

    @field_validator("shared_users")
    @classmethod
    def _unique_users(cls, v: List[str]) -> List[str]:
        return _dedupe(v)


class SubjectCreate(BaseModel):
    name: Optional[str] = None
    color_tag: Optional[str] = None
    shared_users: Optional[List[str]] = None


class SubjectUpdate(BaseModel):
    name: Optional[str] = None
    color_tag: Optional[str] = None
    shared_users: Optional[List[str]] = None


# Tasks
class Task(BaseModel):
    id: str
    user_id: str
    subject_id: Optional[str] = None
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field("", max_length=5000)
    type: TaskType
    priority: Priority
    due_date: date
    status: TaskStatus = "to-do"
    created_at: datetime


class TaskCreate(BaseModel):
    subject_id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    type: Optional[TaskType] = None
    priority: Optional[Priority] = None
    due_date: Optional[date] = None
    status: Optional[TaskStatus] = None


class TaskUpdate(BaseModel):
    subject_id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    type: Optional[TaskType] = None
    priority: Optional[Priority] = None
    due_date: Optional[date] = None
    status: Optional[TaskStatus] = None


# Profiles
class Profile(BaseModel):
    id: str
    email: EmailStr
    name: str
    avatar: Optional[str] = None
    created_at: datetime


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    avatar: Optional[str] = None


# Analytics (derived, never persisted)
class SubjectStat(BaseModel):
    subject_id: str
    subject_name: str
    color_tag: str
    total_tasks: int
    completed_tasks: int
    completion_rate: float


class DayCount(BaseModel):
    date: date
    completed: int


class OverallStats(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total: int
    completed: int
    in_progress: int = Field(..., alias="inProgress")
    todo: int


class AnalyticsSnapshot(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject_stats: List[SubjectStat] = Field(..., alias="subjectStats")
    week_data: List[DayCount] = Field(..., alias="weekData")
    overall: OverallStats
