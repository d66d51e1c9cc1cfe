from __future__ import annotations

from typing import TypedDict


# PUBLIC_INTERFACE
class TaskRow(TypedDict):
    """
    A task as stored in the `tasks` table.

    Fields:
    - id: Unique integer identifier assigned by SQLite
    - title: Normalized title (1..100 chars, no newlines)
    - description: Normalized description, '' when not given
    - due_date: 'YYYY-MM-DD' or ''
    - done: Completion flag, stored as 0/1
    - created_at: ISO8601 UTC creation timestamp
    - updated_at: ISO8601 UTC last update timestamp
    """

    id: int
    title: str
    description: str
    due_date: str
    done: bool
    created_at: str
    updated_at: str
