import logging
import time
from datetime import date, datetime, timezone
from typing import Callable, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr
from starlette.exceptions import HTTPException as StarletteHTTPException

from analytics import aggregate
from config import CORS_ORIGINS, LOG_LEVEL, PORT
from database import KeyValueStore, get_store
from errors import AuthError, TrackerError, ValidationError
from identity import Identity, IdentityProvider, LocalIdentityProvider
from logging_setup import setup_logging
from repository import ProfileRepository, SubjectRepository, TaskRepository, utcnow
from schemas import (
    AnalyticsSnapshot,
    ProfileUpdate,
    SubjectCreate,
    SubjectUpdate,
    TaskCreate,
    TaskUpdate,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Study Tracker API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info("%s %s -> %d (%.1f ms)", request.method, request.url.path, response.status_code, elapsed_ms)
    return response


# Error responses are always {"error": "..."}

@app.exception_handler(TrackerError)
async def tracker_error_handler(request: Request, exc: TrackerError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.__cause__ or exc)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        err = errors[0]
        field = ".".join(str(p) for p in err.get("loc", ()) if p != "body") or "body"
        message = f"Invalid {field}: {err.get('msg', 'invalid value')}"
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error("%s %s failed unexpectedly", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Dependencies

def get_clock() -> Callable[[], datetime]:
    return utcnow


def get_today(clock: Callable[[], datetime] = Depends(get_clock)) -> date:
    return clock().astimezone(timezone.utc).date()


def get_identity_provider(store: KeyValueStore = Depends(get_store)) -> IdentityProvider:
    return LocalIdentityProvider(store)


def get_task_repo(store: KeyValueStore = Depends(get_store), clock=Depends(get_clock)) -> TaskRepository:
    return TaskRepository(store, clock)


def get_subject_repo(
    store: KeyValueStore = Depends(get_store),
    tasks: TaskRepository = Depends(get_task_repo),
    clock=Depends(get_clock),
) -> SubjectRepository:
    return SubjectRepository(store, tasks, clock)


def get_profile_repo(store: KeyValueStore = Depends(get_store), clock=Depends(get_clock)) -> ProfileRepository:
    return ProfileRepository(store, clock)


def get_current_user(
    authorization: Optional[str] = Header(default=None),
    identity: IdentityProvider = Depends(get_identity_provider),
) -> Identity:
    if not authorization:
        raise AuthError("Unauthorized")
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthError("Invalid authorization header")
    return identity.verify_token(parts[1])


# Auth Routes
class SignupRequest(BaseModel):
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    name: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


@app.post("/auth/signup")
def signup(
    payload: SignupRequest,
    identity: IdentityProvider = Depends(get_identity_provider),
    profiles: ProfileRepository = Depends(get_profile_repo),
):
    if not payload.email or not payload.password or not payload.name:
        raise ValidationError("Email, password, and name are required")
    user = identity.create_user(payload.email, payload.password, payload.name)
    profiles.create(user.id, user.email, payload.name)
    return {"user": user}


@app.post("/auth/login")
def login(payload: LoginRequest, identity: IdentityProvider = Depends(get_identity_provider)):
    token = identity.authenticate(payload.email, payload.password)
    user = identity.verify_token(token)
    return {"access_token": token, "token_type": "bearer", "user": user}


# Profile Routes
@app.get("/user/profile")
def get_profile(user: Identity = Depends(get_current_user), profiles: ProfileRepository = Depends(get_profile_repo)):
    return {"profile": profiles.get(user.id)}


@app.put("/user/profile")
def update_profile(
    payload: ProfileUpdate,
    user: Identity = Depends(get_current_user),
    profiles: ProfileRepository = Depends(get_profile_repo),
):
    return {"profile": profiles.update(user.id, payload)}


# Subject Routes
@app.get("/subjects")
def list_subjects(user: Identity = Depends(get_current_user), subjects: SubjectRepository = Depends(get_subject_repo)):
    return {"subjects": subjects.list(user.id)}


@app.post("/subjects")
def create_subject(
    payload: SubjectCreate,
    user: Identity = Depends(get_current_user),
    subjects: SubjectRepository = Depends(get_subject_repo),
):
    return {"subject": subjects.create(user.id, payload)}


@app.put("/subjects/{subject_id}")
def update_subject(
    subject_id: str,
    payload: SubjectUpdate,
    user: Identity = Depends(get_current_user),
    subjects: SubjectRepository = Depends(get_subject_repo),
):
    return {"subject": subjects.update(user.id, subject_id, payload)}


@app.delete("/subjects/{subject_id}")
def delete_subject(
    subject_id: str,
    user: Identity = Depends(get_current_user),
    subjects: SubjectRepository = Depends(get_subject_repo),
):
    subjects.delete(user.id, subject_id)
    return {"success": True}


# Task Routes
@app.get("/tasks")
def list_tasks(user: Identity = Depends(get_current_user), tasks: TaskRepository = Depends(get_task_repo)):
    return {"tasks": tasks.list(user.id)}


@app.post("/tasks")
def create_task(payload: TaskCreate, user: Identity = Depends(get_current_user), tasks: TaskRepository = Depends(get_task_repo)):
    return {"task": tasks.create(user.id, payload)}


@app.put("/tasks/{task_id}")
def update_task(
    task_id: str,
    payload: TaskUpdate,
    user: Identity = Depends(get_current_user),
    tasks: TaskRepository = Depends(get_task_repo),
):
    return {"task": tasks.update(user.id, task_id, payload)}


@app.delete("/tasks/{task_id}")
def delete_task(task_id: str, user: Identity = Depends(get_current_user), tasks: TaskRepository = Depends(get_task_repo)):
    tasks.delete(user.id, task_id)
    return {"success": True}


# Analytics
@app.get("/analytics", response_model=AnalyticsSnapshot)
def get_analytics(
    user: Identity = Depends(get_current_user),
    subjects: SubjectRepository = Depends(get_subject_repo),
    tasks: TaskRepository = Depends(get_task_repo),
    today: date = Depends(get_today),
):
    return aggregate(subjects.list(user.id), tasks.list(user.id), today)


# Healthcheck
@app.get("/healthcheck")
def healthcheck(store: KeyValueStore = Depends(get_store)):
    return {"status": "ok", "time": datetime.now(timezone.utc).isoformat(), "store": type(store).__name__}


@app.get("/")
def read_root():
    return {"message": "Study Tracker API"}


if __name__ == "__main__":
    import uvicorn

    setup_logging(LOG_LEVEL)
    uvicorn.run(app, host="0.0.0.0", port=PORT, log_config=None)
