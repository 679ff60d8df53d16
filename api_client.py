"""
Async HTTP client for the Study Tracker gateway.

Responses are parsed into the shared schema models; error responses are turned
back into the same TrackerError subclasses the gateway raised.
"""

import logging
from typing import Any, Dict, List, Optional, Type

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from config import API_BASE_URL, REQUEST_TIMEOUT_SECONDS
from errors import TrackerError, TransportError, ValidationError, error_for_status
from schemas import (
    AnalyticsSnapshot,
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


def _body(model: Type[BaseModel], data: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a request body against its schema and dump it as JSON-ready data."""
    try:
        parsed = model.model_validate(data)
    except SchemaError as e:
        err = e.errors()[0]
        field = ".".join(str(p) for p in err.get("loc", ())) or "body"
        raise ValidationError(f"Invalid {field}: {err.get('msg', 'invalid value')}") from e
    return parsed.model_dump(mode="json", exclude_unset=True)


class TrackerApi:
    def __init__(
        self,
        base_url: str = API_BASE_URL,
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ):
        self.token = token
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=json, headers=self._headers())
        except httpx.HTTPError as e:
            logger.warning("%s %s failed: %s", method, path, e)
            raise TransportError() from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.is_error:
            message = data.get("error") if isinstance(data, dict) else None
            raise error_for_status(response.status_code, message or "API request failed")
        if not isinstance(data, dict):
            raise TrackerError("Unexpected response from server")
        return data

    # Auth
    async def signup(self, email: str, password: str, name: str) -> Dict[str, Any]:
        data = await self.request("POST", "/auth/signup", {"email": email, "password": password, "name": name})
        return data["user"]

    async def login(self, email: str, password: str) -> str:
        data = await self.request("POST", "/auth/login", {"email": email, "password": password})
        return data["access_token"]

    # Profile
    async def get_profile(self) -> Profile:
        data = await self.request("GET", "/user/profile")
        return Profile.model_validate(data["profile"])

    async def update_profile(self, changes: Dict[str, Any]) -> Profile:
        data = await self.request("PUT", "/user/profile", _body(ProfileUpdate, changes))
        return Profile.model_validate(data["profile"])

    # Subjects
    async def list_subjects(self) -> List[Subject]:
        data = await self.request("GET", "/subjects")
        return [Subject.model_validate(s) for s in data.get("subjects", [])]

    async def create_subject(self, draft: Dict[str, Any]) -> Subject:
        data = await self.request("POST", "/subjects", _body(SubjectCreate, draft))
        return Subject.model_validate(data["subject"])

    async def update_subject(self, subject_id: str, changes: Dict[str, Any]) -> Subject:
        data = await self.request("PUT", f"/subjects/{subject_id}", _body(SubjectUpdate, changes))
        return Subject.model_validate(data["subject"])

    async def delete_subject(self, subject_id: str) -> None:
        await self.request("DELETE", f"/subjects/{subject_id}")

    # Tasks
    async def list_tasks(self) -> List[Task]:
        data = await self.request("GET", "/tasks")
        return [Task.model_validate(t) for t in data.get("tasks", [])]

    async def create_task(self, draft: Dict[str, Any]) -> Task:
        data = await self.request("POST", "/tasks", _body(TaskCreate, draft))
        return Task.model_validate(data["task"])

    async def update_task(self, task_id: str, changes: Dict[str, Any]) -> Task:
        data = await self.request("PUT", f"/tasks/{task_id}", _body(TaskUpdate, changes))
        return Task.model_validate(data["task"])

    async def delete_task(self, task_id: str) -> None:
        await self.request("DELETE", f"/tasks/{task_id}")

    # Analytics
    async def get_analytics(self) -> AnalyticsSnapshot:
        data = await self.request("GET", "/analytics")
        return AnalyticsSnapshot.model_validate(data)
