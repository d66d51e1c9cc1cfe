from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status
from pydantic import BaseModel, ValidationError

from ..db import TaskStorage
from ..errors import StorageError, bad_request, field_error, not_found, unprocessable
from ..schemas import (
    ProblemDetails,
    TaskCreate,
    TaskOut,
    TaskUpdate,
    field_errors,
    task_from_row,
    wire_fields,
)
from ..utils import utc_timestamp

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/tasks",
    tags=["tasks"],
)

_ID_PATTERN = re.compile(r"[0-9]+")
# SQLite INTEGER range.
_MAX_ID = 2**63 - 1
_MAX_ID_DIGITS = len(str(_MAX_ID))

MAX_BODY_BYTES = 64 * 1024

_PROBLEM = {"model": ProblemDetails, "content": {"application/problem+json": {}}}


# PUBLIC_INTERFACE
def get_storage(request: Request) -> TaskStorage:
    """
    Dependency returning the storage attached to the application at startup.
    """
    return request.app.state.storage


def _parse_task_id(raw: str) -> int:
    if (
        len(raw) > _MAX_ID_DIGITS
        or not _ID_PATTERN.fullmatch(raw)
        or not 1 <= int(raw) <= _MAX_ID
    ):
        raise bad_request("Invalid task ID", [field_error("id", "id must be a positive integer")])
    return int(raw)


def _parse_done_filter(raw: Optional[str]) -> Optional[bool]:
    if raw is None:
        return None
    if raw == "true":
        return True
    if raw == "false":
        return False
    raise bad_request(
        'done query must be "true" or "false"',
        [field_error("done", 'must be "true" or "false"')],
    )


async def _read_body(request: Request) -> bytes:
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > MAX_BODY_BYTES:
        raise bad_request("Payload too large")
    chunks: List[bytes] = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > MAX_BODY_BYTES:
            raise bad_request("Payload too large")
        chunks.append(chunk)
    return b"".join(chunks)


async def _read_json_object(request: Request) -> Dict[str, Any]:
    body = await _read_body(request)
    if not body:
        raise bad_request("Request body must be a JSON object")
    try:
        payload = json.loads(body)
    except (ValueError, RecursionError):
        raise bad_request("Invalid JSON") from None
    if not isinstance(payload, dict):
        raise bad_request("Request body must be a JSON object")
    return payload


def _reject_unknown_fields(payload: Dict[str, Any], model: type[BaseModel]) -> None:
    allowed = set(wire_fields(model))
    unknown: List[str] = [key for key in payload if key not in allowed]
    if unknown:
        raise bad_request(
            "Unknown fields in request",
            [field_error(key, "unknown field") for key in unknown],
        )


def _validate(model: type[BaseModel], payload: Dict[str, Any]) -> Any:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise unprocessable(field_errors(exc)) from None


# PUBLIC_INTERFACE
@router.get(
    "",
    response_model=List[TaskOut],
    summary="List Tasks",
    description=(
        "List all tasks, newest first.\n\n"
        "Query parameters:\n"
        "- done: 'true' or 'false' to only return tasks with that completion status"
    ),
    responses={
        200: {"description": "List retrieved successfully"},
        400: {"description": "Invalid query parameters", **_PROBLEM},
    },
)
async def list_tasks(
    response: Response,
    done: Optional[str] = Query(None, description="Filter by completion status: 'true' or 'false'"),
    storage: TaskStorage = Depends(get_storage),
) -> List[TaskOut]:
    """
    List tasks, optionally filtered by completion status.
    """
    done_filter = _parse_done_filter(done)
    rows = await storage.fetch_all(done_filter)
    response.headers["Cache-Control"] = "no-store"
    return [task_from_row(row) for row in rows]


# PUBLIC_INTERFACE
@router.get(
    "/{task_id}",
    response_model=TaskOut,
    summary="Get Task",
    description="Get a single task by ID.",
    responses={
        200: {"description": "Task found"},
        400: {"description": "Invalid task ID", **_PROBLEM},
        404: {"description": "Task not found", **_PROBLEM},
    },
)
async def get_task(task_id: str, response: Response, storage: TaskStorage = Depends(get_storage)) -> TaskOut:
    """
    Retrieve a single task by its ID.
    """
    tid = _parse_task_id(task_id)
    row = await storage.fetch_one(tid)
    if row is None:
        raise not_found()
    response.headers["Cache-Control"] = "no-store"
    return task_from_row(row)


# PUBLIC_INTERFACE
@router.post(
    "",
    response_model=TaskOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create Task",
    description=(
        "Create a new task from a JSON object with 'title' and optional 'description' and "
        "'dueDate'. Returns the created task with a Location header."
    ),
    responses={
        201: {"description": "Task created successfully"},
        400: {"description": "Malformed or oversized body, or unknown fields", **_PROBLEM},
        422: {"description": "Validation error", **_PROBLEM},
    },
)
async def create_task(
    request: Request, response: Response, storage: TaskStorage = Depends(get_storage)
) -> TaskOut:
    """
    Create a new task. The task starts out not done.
    """
    payload = await _read_json_object(request)
    _reject_unknown_fields(payload, TaskCreate)
    data: TaskCreate = _validate(TaskCreate, payload)

    now = utc_timestamp()
    tid = await storage.insert(data.title, data.description, data.due_date, now)
    row = await storage.fetch_one(tid)
    if row is None:
        raise StorageError(f"Created task {tid} could not be read back", "insert")

    logger.info("Created task %s", tid)
    response.headers["Location"] = f"{router.prefix}/{tid}"
    return task_from_row(row)


# PUBLIC_INTERFACE
@router.patch(
    "/{task_id}",
    response_model=TaskOut,
    summary="Update Task",
    description="Partially update a task. Fields not present in the body are left unchanged.",
    responses={
        200: {"description": "Task updated"},
        400: {"description": "Invalid task ID, malformed body or unknown fields", **_PROBLEM},
        404: {"description": "Task not found", **_PROBLEM},
        422: {"description": "Validation error", **_PROBLEM},
    },
)
async def update_task(
    task_id: str, request: Request, storage: TaskStorage = Depends(get_storage)
) -> TaskOut:
    """
    Partial update of a task.
    """
    tid = _parse_task_id(task_id)
    payload = await _read_json_object(request)
    _reject_unknown_fields(payload, TaskUpdate)
    data: TaskUpdate = _validate(TaskUpdate, payload)
    changes = data.changes()
    if not changes:
        raise bad_request("No updatable fields supplied")

    current = await storage.fetch_one(tid)
    if current is None:
        raise not_found()

    updated_at = utc_timestamp(after=current["updated_at"])
    # The row may have been deleted since it was read.
    if await storage.update(tid, changes, updated_at) == 0:
        raise not_found()
    row = await storage.fetch_one(tid)
    if row is None:
        raise not_found()

    logger.info("Updated task %s fields=%s", tid, sorted(changes))
    return task_from_row(row)


# PUBLIC_INTERFACE
@router.delete(
    "/{task_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete Task",
    description="Delete a task by ID.",
    responses={
        204: {"description": "Task deleted"},
        400: {"description": "Invalid task ID", **_PROBLEM},
        404: {"description": "Task not found", **_PROBLEM},
    },
)
async def delete_task(task_id: str, storage: TaskStorage = Depends(get_storage)) -> None:
    """
    Delete a task. Returns 204 on success, 404 if not found.
    """
    tid = _parse_task_id(task_id)
    if await storage.delete(tid) == 0:
        raise not_found()
    logger.info("Deleted task %s", tid)
    return None
