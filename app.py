import logging
import os
import re
import threading
import time
from pathlib import Path

from dotenv import load_dotenv
load_dotenv()
from datetime import timedelta
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from store import DEFAULT_COMPLETION_KEYWORDS, NotFound, Task, TaskError, TaskStore, TaskView, keyword_rule, never_complete

BASE_DIR = Path(__file__).parent


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_list(name: str, default) -> list[str]:
    raw = os.getenv(name, "")
    parts = [p.strip() for p in raw.split(",") if p.strip()]
    return parts or list(default)


DATA_FILE            = Path(os.getenv("TASKS_DATA_FILE", BASE_DIR / "tasks.json"))
AUTO_COMPLETE        = _env_bool("TASKS_AUTO_COMPLETE")
COMPLETION_KEYWORDS  = _env_list("TASKS_COMPLETION_KEYWORDS", DEFAULT_COMPLETION_KEYWORDS)
DUE_SOON_MINUTES     = int(os.getenv("TASKS_DUE_SOON_MINUTES", "60"))
CORS_ORIGINS         = _env_list("TASKS_CORS_ORIGINS", ["*"])

logger = logging.getLogger(__name__)

app = FastAPI(title="Task API")
app.add_middleware(CORSMiddleware, allow_origins=CORS_ORIGINS, allow_methods=["*"], allow_headers=["*"])

_store: Optional[TaskStore] = None
_store_lock = threading.Lock()


def get_store() -> TaskStore:
    global _store
    # Sync dependencies run in the thread pool; every request must share one store and its write lock.
    with _store_lock:
        if _store is None:
            _store = TaskStore(
                DATA_FILE,
                completion_rule=keyword_rule(COMPLETION_KEYWORDS) if AUTO_COMPLETE else never_complete,
                due_soon=timedelta(minutes=DUE_SOON_MINUTES),
            )
            logger.info("Storing tasks in %s (auto-complete %s)", DATA_FILE, "on" if AUTO_COMPLETE else "off")
    return _store


_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def parse_task_id(task_id: str) -> int:
    """Read the id the way parseInt does: leading digits count, anything else is an unknown task."""
    match = _LEADING_INT.match(task_id)
    if not match:
        raise NotFound("Task not found")
    return int(match.group(1))


TaskId = Annotated[int, Depends(parse_task_id)]


Store = Annotated[TaskStore, Depends(get_store)]


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    elapsed = (time.perf_counter() - start) * 1000
    logger.info("%s %s %d %.1f ms", request.method, request.url.path, response.status_code, elapsed)
    return response


def error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@app.exception_handler(TaskError)
def task_error(request: Request, exc: TaskError):
    return error(exc.status_code, str(exc))


@app.exception_handler(StarletteHTTPException)
def http_error(request: Request, exc: StarletteHTTPException):
    return error(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
def request_validation_error(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    message = first.get("msg", "Invalid request")
    return error(status.HTTP_400_BAD_REQUEST, f"{field}: {message}" if field else message)


@app.exception_handler(OSError)
def storage_error(request: Request, exc: OSError):
    logger.exception("Storage error on %s %s", request.method, request.url.path)
    return error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


@app.exception_handler(Exception)
def unexpected_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


class CreateTaskRequest(BaseModel):
    title: Optional[str] = None
    due_date: Optional[str] = Field(default=None, alias="dueDate")


class UpdateTaskRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: Optional[str] = None
    due_date: Optional[str] = Field(default=None, alias="dueDate")


@app.get("/api/tasks", response_model=list[TaskView])
def list_tasks(
    store: Store,
    completed: Optional[str] = None,
    search: Optional[str] = None,
    sort: Optional[str] = None,
):
    return store.list_tasks(completed=completed, search=search, sort=sort)


@app.post("/api/tasks", response_model=Task, status_code=201)
def create_task(req: CreateTaskRequest, store: Store):
    return store.add(req.title, req.due_date)


@app.put("/api/tasks/{task_id}", response_model=Task)
def complete_task(task_id: TaskId, store: Store):
    return store.mark_complete(task_id)


@app.patch("/api/tasks/{task_id}", response_model=Task)
def update_task(task_id: TaskId, store: Store, req: Optional[UpdateTaskRequest] = None):
    req = req or UpdateTaskRequest()
    # An explicit "dueDate": null clears the due date; leaving it out keeps it.
    clear = "due_date" in req.model_fields_set and req.due_date is None
    return store.update(task_id, title=req.title, due_date=req.due_date, clear_due_date=clear)


@app.delete("/api/tasks/{task_id}", status_code=204)
def delete_task(task_id: TaskId, store: Store):
    store.remove(task_id)
    return Response(status_code=204)


@app.get("/api/stats")
def stats(store: Store):
    return store.stats()


@app.get("/")
def root():
    return FileResponse(BASE_DIR / "index.html")
