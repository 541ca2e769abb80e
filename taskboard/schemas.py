from __future__ import annotations

from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class ErrorEnvelope(BaseModel):
    code: str
    message: str
    details: Optional[dict[str, Any]] = None
    requestId: Optional[str] = None


class Health(BaseModel):
    status: str = "ok"


class Version(BaseModel):
    version: str = "1.0.0"


class UserIn(BaseModel):
    email: str = Field(min_length=1, max_length=320)
    password: str


class UserOut(BaseModel):
    email: str
    loggedIn: bool


class BoardIn(BaseModel):
    title: str = Field(min_length=1, max_length=140)


class BoardOut(BaseModel):
    id: int
    title: str
    owner: str
    joined: list[str]
    limits: list[int]
    myRole: str
    taskCount: int


class BoardsPage(BaseModel):
    boards: list[BoardOut]


class TransferIn(BaseModel):
    newOwner: str = Field(min_length=1)


class TaskIn(BaseModel):
    # length and date rules are enforced by the board so they surface as error envelopes
    title: str
    dueDate: datetime
    description: Optional[str] = ""


class TaskPatch(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    dueDate: Optional[datetime] = None


class AssignIn(BaseModel):
    assignee: str = Field(min_length=1)


class AdvanceIn(BaseModel):
    column: int


class LimitIn(BaseModel):
    limit: int


class TaskOut(BaseModel):
    id: int
    boardId: int
    title: str
    description: str
    creationTime: date
    dueDate: datetime
    assignee: str
    column: int
    state: str


class ColumnOut(BaseModel):
    boardId: int
    column: int
    name: str
    limit: int
    tasks: list[TaskOut]


class BoardView(BaseModel):
    board: BoardOut
    columns: list[ColumnOut]
