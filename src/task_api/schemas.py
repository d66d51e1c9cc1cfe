from __future__ import annotations

import re
from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_core import PydanticCustomError

from .models import TaskRow
from .utils import normalize_text

TITLE_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 1000

_DATE_PATTERN = re.compile(r"^[0-9]{4}-[0-9]{2}-[0-9]{2}$")

# Python attribute name -> name used on the wire
_WIRE_NAMES = {
    "due_date": "dueDate",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
}


def _check_title(value: Any) -> str:
    """
    Normalize a title and enforce 1..100 characters without line breaks.
    """
    if not isinstance(value, str):
        raise PydanticCustomError("title_required", "title is required")
    s = normalize_text(value)
    if not s:
        raise PydanticCustomError("title_required", "title is required")
    if len(s) > TITLE_MAX_LENGTH:
        raise PydanticCustomError(
            "title_length", "title must be 1-{max_length} characters", {"max_length": TITLE_MAX_LENGTH}
        )
    if "\n" in s or "\r" in s:
        raise PydanticCustomError("title_newline", "title cannot contain newlines")
    return s


def _check_description(value: Any) -> str:
    if not isinstance(value, str):
        raise PydanticCustomError("description_type", "description must be a string")
    s = normalize_text(value)
    if len(s) > DESCRIPTION_MAX_LENGTH:
        raise PydanticCustomError(
            "description_length",
            "description must be 0-{max_length} characters",
            {"max_length": DESCRIPTION_MAX_LENGTH},
        )
    return s


def _check_due_date(value: Any) -> str:
    """
    Accept '' or a 'YYYY-MM-DD' string naming a real calendar day.
    """
    if not isinstance(value, str):
        raise PydanticCustomError("due_date_type", "dueDate must be a string")
    s = normalize_text(value)
    if s == "":
        return s
    if not _DATE_PATTERN.match(s):
        raise PydanticCustomError("due_date_format", "dueDate must be YYYY-MM-DD or empty")
    try:
        date.fromisoformat(s)
    except ValueError:
        raise PydanticCustomError("due_date_invalid", "dueDate must be a valid date") from None
    return s


# PUBLIC_INTERFACE
class TaskCreate(BaseModel):
    """
    Schema for creating a new task. Null optional fields count as absent.
    """

    model_config = ConfigDict(
        extra="forbid",
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "title": "Buy groceries",
                "description": "Milk, eggs, bread",
                "dueDate": "2025-02-01",
            }
        },
    )

    title: str = Field(..., description="Short title, 1..100 characters, single line")
    description: str = Field(default="", description="Optional detailed description, up to 1000 characters")
    due_date: str = Field(default="", alias="dueDate", description="Due date as YYYY-MM-DD, or empty")

    @field_validator("title", mode="before")
    @classmethod
    def validate_title(cls, v: Any) -> str:
        return _check_title(v)

    @field_validator("description", mode="before")
    @classmethod
    def validate_description(cls, v: Any) -> str:
        return "" if v is None else _check_description(v)

    @field_validator("due_date", mode="before")
    @classmethod
    def validate_due_date(cls, v: Any) -> str:
        return "" if v is None else _check_due_date(v)


# PUBLIC_INTERFACE
class TaskUpdate(BaseModel):
    """
    Schema for partially updating a task.
    All fields are optional; only provided, non-null fields are applied.
    """

    model_config = ConfigDict(
        extra="forbid",
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "title": "Buy groceries and supplies",
                "done": True,
            }
        },
    )

    title: Optional[str] = Field(default=None, description="Short title, 1..100 characters, single line")
    description: Optional[str] = Field(default=None, description="Detailed description, up to 1000 characters")
    due_date: Optional[str] = Field(default=None, alias="dueDate", description="Due date as YYYY-MM-DD, or empty")
    done: Optional[bool] = Field(default=None, description="Completion status flag")

    @field_validator("title", mode="before")
    @classmethod
    def validate_title(cls, v: Any) -> Optional[str]:
        return None if v is None else _check_title(v)

    @field_validator("description", mode="before")
    @classmethod
    def validate_description(cls, v: Any) -> Optional[str]:
        return None if v is None else _check_description(v)

    @field_validator("due_date", mode="before")
    @classmethod
    def validate_due_date(cls, v: Any) -> Optional[str]:
        return None if v is None else _check_due_date(v)

    @field_validator("done", mode="before")
    @classmethod
    def validate_done(cls, v: Any) -> Optional[bool]:
        if v is None:
            return None
        if not isinstance(v, bool):
            raise PydanticCustomError("done_type", "done must be a boolean")
        return v

    def changes(self) -> Dict[str, Any]:
        """
        Return the storage columns to set, keyed by column name.
        """
        result: Dict[str, Any] = {}
        if self.title is not None:
            result["title"] = self.title
        if self.description is not None:
            result["description"] = self.description
        if self.due_date is not None:
            result["due_date"] = self.due_date
        if self.done is not None:
            result["done"] = self.done
        return result


# PUBLIC_INTERFACE
class TaskOut(BaseModel):
    """
    Schema returned by the API for a task.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "id": 123,
                "title": "Buy groceries",
                "description": "Milk, eggs, bread",
                "dueDate": "2025-02-01",
                "done": False,
                "createdAt": "2025-01-25T10:15:30.123Z",
                "updatedAt": "2025-01-26T09:00:00.000Z",
            }
        },
    )

    id: int = Field(..., description="Unique identifier of the task")
    title: str = Field(..., description="Short title")
    description: str = Field(..., description="Detailed description, may be empty")
    due_date: str = Field(..., alias="dueDate", description="Due date as YYYY-MM-DD, or empty")
    done: bool = Field(..., description="Completion status flag")
    created_at: str = Field(..., alias="createdAt", description="Creation timestamp, ISO8601 UTC")
    updated_at: str = Field(..., alias="updatedAt", description="Last update timestamp, ISO8601 UTC")


class FieldError(BaseModel):
    field: str
    message: str


class ProblemDetails(BaseModel):
    """
    Error body sent with content type application/problem+json.
    """

    type: str = Field(default="about:blank")
    title: str
    status: int
    detail: str
    errors: Optional[List[FieldError]] = None


# PUBLIC_INTERFACE
def task_from_row(row: TaskRow) -> TaskOut:
    """Map a stored row onto the wire model."""
    return TaskOut(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        due_date=row["due_date"],
        done=row["done"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def wire_fields(model: type[BaseModel]) -> List[str]:
    """Names a request body may use for the given model."""
    return [info.alias or name for name, info in model.model_fields.items()]


def field_errors(exc: ValidationError) -> List[Dict[str, str]]:
    """
    Flatten a pydantic ValidationError into {field, message} entries.
    """
    errors: List[Dict[str, str]] = []
    for err in exc.errors():
        loc = err.get("loc") or ()
        name = str(loc[0]) if loc else "body"
        field = _WIRE_NAMES.get(name, name)
        if err["type"] == "missing":
            message = f"{field} is required"
        else:
            message = err["msg"]
        errors.append({"field": field, "message": message})
    return errors
