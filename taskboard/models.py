from __future__ import annotations

import functools
import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import IntEnum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from .errors import ErrorKind, fatal, reject
from .events import ChangeEvent, EventKind, Notifier, log_only
from .utils import UNASSIGNED, DateLike, as_datetime, is_past, normalize_identity

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 50
MAX_DESCRIPTION_LENGTH = 300
UNLIMITED = -1


class Column(IntEnum):
    BACKLOG = 0
    IN_PROGRESS = 1
    DONE = 2

    @property
    def slug(self) -> str:
        return self.name.lower().replace("_", "-")

    @property
    def label(self) -> str:
        return self.name.lower().replace("_", " ")

    @classmethod
    def from_ordinal(cls, ordinal: int) -> Column:
        try:
            return cls(ordinal)
        except ValueError:
            raise reject(
                logger,
                ErrorKind.NOT_FOUND,
                f"The column '{ordinal}' is not a valid column number",
                column=ordinal,
            ) from None


# === Snapshots (read-only serialization form) ===


class TaskSnapshot(BaseModel):
    id: int
    title: str
    description: str
    creationTime: date
    dueDate: datetime
    assignee: str
    state: Column


class BoardSnapshot(BaseModel):
    id: int
    title: str
    owner: str
    joined: List[str] = Field(default_factory=list)
    limits: List[int] = Field(default_factory=lambda: [UNLIMITED] * 3, min_length=3, max_length=3)
    taskIdCounter: int = 0
    backlog: List[TaskSnapshot] = Field(default_factory=list)
    inProgress: List[TaskSnapshot] = Field(default_factory=list)
    done: List[TaskSnapshot] = Field(default_factory=list)

    def column(self, column: Column) -> List[TaskSnapshot]:
        return (self.backlog, self.inProgress, self.done)[column]


# === Validation ===


def _check_title(title: str) -> None:
    if len(title) < 1:
        raise reject(logger, ErrorKind.INVALID_ARGUMENT, "title is empty")
    if len(title) > MAX_TITLE_LENGTH:
        raise reject(logger, ErrorKind.INVALID_ARGUMENT, "title is over the limit", limit=MAX_TITLE_LENGTH)


def _check_description(description: str) -> None:
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise reject(
            logger,
            ErrorKind.INVALID_ARGUMENT,
            "description is over the limit",
            limit=MAX_DESCRIPTION_LENGTH,
        )


def _check_due_date(due_date: DateLike) -> None:
    if is_past(due_date):
        raise reject(logger, ErrorKind.INVALID_ARGUMENT, "due date was passed")


# === Domain objects ===


@dataclass(eq=False)
class Task:
    """A unit of work owned by exactly one board.

    Instances are built with :meth:`create` (validating) or straight from a
    snapshot (trusted). ``state`` is moved only by :meth:`Board.advance_task`,
    which keeps the board's columns and index in step with it.
    """

    id: int
    title: str
    due_date: datetime
    description: str = ""
    creation_time: date = field(default_factory=date.today)
    assignee: str = UNASSIGNED
    state: Column = Column.BACKLOG
    board_id: int = 0
    notify: Notifier = field(default=log_only, repr=False)

    @classmethod
    def create(
        cls,
        task_id: int,
        title: str,
        due_date: DateLike,
        description: Optional[str] = "",
        board_id: int = 0,
        notify: Optional[Notifier] = None,
    ) -> Task:
        logger.debug("Task.create id=%s board=%s", task_id, board_id)
        description = description or ""
        _check_title(title)
        _check_description(description)
        _check_due_date(due_date)
        return cls(
            id=task_id,
            title=title,
            due_date=as_datetime(due_date),
            description=description,
            board_id=board_id,
            notify=notify or log_only,
        )

    @classmethod
    def from_snapshot(cls, snapshot: TaskSnapshot, board_id: int, notify: Notifier) -> Task:
        return cls(
            id=snapshot.id,
            title=snapshot.title,
            due_date=snapshot.dueDate,
            description=snapshot.description,
            creation_time=snapshot.creationTime,
            assignee=normalize_identity(snapshot.assignee),
            state=snapshot.state,
            board_id=board_id,
            notify=notify,
        )

    @property
    def is_done(self) -> bool:
        return self.state is Column.DONE

    @property
    def is_unassigned(self) -> bool:
        return self.assignee == UNASSIGNED

    def advance(self, caller: str) -> Column:
        caller = normalize_identity(caller)
        if self.is_done:
            raise reject(
                logger,
                ErrorKind.INVALID_ARGUMENT,
                f"task numbered '{self.id}' is done and can't be advanced",
                task=self.id,
            )
        if caller != self.assignee:
            raise reject(logger, ErrorKind.PERMISSION_DENIED, "User is not the task's assignee", task=self.id)
        self.state = Column(self.state + 1)
        return self.state

    def assign(self, caller: str, new_assignee: str) -> None:
        caller = normalize_identity(caller)
        new_assignee = normalize_identity(new_assignee)
        logger.debug("assign task=%s from=%s to=%s", self.id, self.assignee, new_assignee)
        if self.is_done:
            raise reject(logger, ErrorKind.INVALID_ARGUMENT, f"the task '{self.id}' is already done", task=self.id)
        if caller != self.assignee and not self.is_unassigned:
            raise reject(
                logger,
                ErrorKind.PERMISSION_DENIED,
                f"email: '{caller}' isn't the task's assignee",
                task=self.id,
            )
        if caller == self.assignee and caller == new_assignee:
            raise reject(
                logger,
                ErrorKind.ALREADY_EXISTS,
                f"email: '{caller}' is already the task's assignee",
                task=self.id,
            )
        self.assignee = new_assignee
        self._changed(assignee=new_assignee)

    def update_title(self, caller: str, title: str) -> None:
        self._check_editable(caller)
        _check_title(title)
        self.title = title
        self._changed(title=title)

    def update_description(self, caller: str, description: Optional[str]) -> None:
        self._check_editable(caller)
        description = description or ""
        _check_description(description)
        self.description = description
        self._changed(description=description)

    def update_due_date(self, caller: str, due_date: DateLike) -> None:
        self._check_editable(caller)
        _check_due_date(due_date)
        self.due_date = as_datetime(due_date)
        self._changed(dueDate=self.due_date.isoformat())

    def reset_assignee(self) -> None:
        self.assignee = UNASSIGNED

    def snapshot(self) -> TaskSnapshot:
        return TaskSnapshot(
            id=self.id,
            title=self.title,
            description=self.description,
            creationTime=self.creation_time,
            dueDate=self.due_date,
            assignee=self.assignee,
            state=self.state,
        )

    def _check_editable(self, caller: str) -> None:
        if normalize_identity(caller) != self.assignee:
            raise reject(logger, ErrorKind.PERMISSION_DENIED, "User is not the task's assignee", task=self.id)
        if self.is_done:
            raise reject(logger, ErrorKind.INVALID_ARGUMENT, f"the task '{self.id}' is already done", task=self.id)

    def _changed(self, **fields) -> None:
        self.notify(ChangeEvent(EventKind.TASK_UPDATED, self.board_id, self.id, fields))


def synchronized(method):
    """Run a Board method while holding the board's lock."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)

    return wrapper


class Board:
    """Three ordered columns of tasks under WIP limits.

    Tasks live in the per-column lists; ``_index`` maps each task id to the
    column holding it and is updated in the same critical section as the
    lists. Every mutating method holds the board lock for its whole
    read-modify-write, so operations on one board are serialized while
    different boards proceed independently.
    """

    def __init__(self, board_id: int, title: str, owner: str, notify: Optional[Notifier] = None) -> None:
        self.id = board_id
        self.title = title
        self.owner = normalize_identity(owner)
        self.joined: List[str] = []
        self.task_id_counter = 0
        self.notify: Notifier = notify or log_only
        self._columns: Dict[Column, List[Task]] = {column: [] for column in Column}
        self._limits: Dict[Column, int] = {column: UNLIMITED for column in Column}
        self._index: Dict[int, Column] = {}
        self._lock = threading.RLock()

    def __repr__(self) -> str:
        sizes = ", ".join(f"{c.slug}={len(self._columns[c])}" for c in Column)
        return f"Board(id={self.id}, title={self.title!r}, owner={self.owner!r}, {sizes})"

    # === Membership ===

    @property
    def members(self) -> List[str]:
        return [self.owner, *self.joined]

    def is_member(self, identity: str) -> bool:
        return normalize_identity(identity) in self.members

    @synchronized
    def change_owner(self, current_owner: str, new_owner: str) -> None:
        current_owner = normalize_identity(current_owner)
        new_owner = normalize_identity(new_owner)
        logger.debug("change_owner board=%s from=%s to=%s", self.id, current_owner, new_owner)
        if new_owner not in self.joined:
            raise reject(
                logger,
                ErrorKind.INVALID_ARGUMENT,
                f"the user {new_owner} isn't joined to the board",
                board=self.id,
            )
        if current_owner != self.owner:
            raise reject(logger, ErrorKind.PERMISSION_DENIED, "user isn't the board's owner", board=self.id)
        self.joined.remove(new_owner)
        self.joined.append(self.owner)
        self.owner = new_owner
        self.notify(
            ChangeEvent(EventKind.OWNER_CHANGED, self.id, payload={"owner": new_owner, "former": current_owner})
        )

    @synchronized
    def join_board(self, email: str) -> None:
        email = normalize_identity(email)
        logger.debug("join_board board=%s user=%s", self.id, email)
        if email == self.owner:
            raise reject(logger, ErrorKind.PERMISSION_DENIED, f"the user {email} is the board's owner", board=self.id)
        if email in self.joined:
            raise reject(
                logger,
                ErrorKind.ALREADY_EXISTS,
                f"the user '{email}' is already joined to the board",
                board=self.id,
            )
        self.joined.append(email)
        self.notify(ChangeEvent(EventKind.MEMBER_JOINED, self.id, payload={"email": email}))

    @synchronized
    def leave_board(self, email: str) -> None:
        email = normalize_identity(email)
        logger.debug("leave_board board=%s user=%s", self.id, email)
        if email not in self.joined:
            raise reject(
                logger,
                ErrorKind.INVALID_ARGUMENT,
                f"user with email '{email}' is not joined to the board",
                board=self.id,
            )
        self.joined.remove(email)
        # finished work keeps its assignee
        released = [
            task
            for column in (Column.BACKLOG, Column.IN_PROGRESS)
            for task in self._columns[column]
            if task.assignee == email
        ]
        for task in released:
            task.reset_assignee()
        self.notify(ChangeEvent(EventKind.MEMBER_LEFT, self.id, payload={"email": email}))
        for task in released:
            self.notify(ChangeEvent(EventKind.TASK_UPDATED, self.id, task.id, {"assignee": UNASSIGNED}))

    # === Tasks ===

    @synchronized
    def add_task(self, title: str, due_date: DateLike, description: Optional[str] = "") -> Task:
        logger.debug("add_task board=%s title=%r", self.id, title)
        if self._is_full(Column.BACKLOG):
            raise reject(
                logger,
                ErrorKind.LIMIT_EXCEEDED,
                f"Backlog in board '{self.title}' has reached its limit and can't contain more tasks",
                board=self.id,
                limit=self._limits[Column.BACKLOG],
            )
        task = Task.create(
            self.task_id_counter,
            title,
            due_date,
            description,
            board_id=self.id,
            notify=self.notify,
        )
        self._columns[Column.BACKLOG].append(task)
        self._index[task.id] = Column.BACKLOG
        self.task_id_counter += 1
        self.notify(
            ChangeEvent(EventKind.TASK_ADDED, self.id, task.id, task.snapshot().model_dump(mode="json"))
        )
        return task

    @synchronized
    def remove_task(self, task_id: int) -> None:
        logger.debug("remove_task board=%s task=%s", self.id, task_id)
        column = self._index.get(task_id)
        if column is None:
            raise reject(
                logger,
                ErrorKind.NOT_FOUND,
                f"A Task with the taskId '{task_id}' doesn't exist in the Board",
                task=task_id,
            )
        task = self._locate(task_id, column)
        self._columns[column].remove(task)
        del self._index[task_id]
        self.notify(ChangeEvent(EventKind.TASK_REMOVED, self.id, task_id))

    @synchronized
    def advance_task(self, caller: str, column_ordinal: int, task_id: int) -> Task:
        logger.debug("advance_task board=%s column=%s task=%s", self.id, column_ordinal, task_id)
        column = Column.from_ordinal(column_ordinal)
        current = self._index.get(task_id)
        if current is None:
            raise reject(logger, ErrorKind.NOT_FOUND, f"task numbered '{task_id}' doesn't exist", task=task_id)
        task = self._locate(task_id, current)
        if task.assignee != normalize_identity(caller):
            raise reject(logger, ErrorKind.PERMISSION_DENIED, "User is not the task's assignee", task=task_id)
        if current is not column:
            raise reject(
                logger,
                ErrorKind.NOT_FOUND,
                f"the task '{task_id}' isn't in the column {column.label}",
                task=task_id,
                column=int(column),
            )
        if current is Column.DONE:
            raise reject(
                logger,
                ErrorKind.INVALID_ARGUMENT,
                f"task numbered '{task_id}' is done and can't be advanced",
                task=task_id,
            )
        target = Column(current + 1)
        if self._is_full(target):
            raise reject(
                logger,
                ErrorKind.LIMIT_EXCEEDED,
                f"task numbered '{task_id}' can't be advanced because the next column is full",
                task=task_id,
                limit=self._limits[target],
            )
        if task.state is not current:
            raise fatal(logger, f"task {task_id} is listed in '{current.slug}' but its state is '{task.state.slug}'")
        # nothing below can fail: task state, lists and index move together
        task.advance(caller)
        self._columns[current].remove(task)
        self._columns[target].append(task)
        self._index[task_id] = target
        self.notify(
            ChangeEvent(
                EventKind.TASK_ADVANCED,
                self.id,
                task_id,
                {"from": current.slug, "to": target.slug, "state": int(target)},
            )
        )
        return task

    @synchronized
    def search_task(self, task_id: int, column_ordinal: Optional[int] = None) -> Task:
        if column_ordinal is not None:
            column = Column.from_ordinal(column_ordinal)
            for task in self._columns[column]:
                if task.id == task_id:
                    return task
            raise reject(
                logger,
                ErrorKind.NOT_FOUND,
                f"A Task with the taskId '{task_id}' doesn't exist in column '{column_ordinal}'",
                task=task_id,
                column=column_ordinal,
            )
        column = self._index.get(task_id)
        if column is None:
            raise reject(
                logger,
                ErrorKind.NOT_FOUND,
                f"A Task with the taskId '{task_id}' doesn't exist in the Board",
                task=task_id,
            )
        return self._locate(task_id, column)

    @synchronized
    def assign_task(self, caller: str, task_id: int, assignee: str) -> Task:
        task = self.search_task(task_id)
        task.assign(caller, assignee)
        return task

    @synchronized
    def update_task_title(self, caller: str, task_id: int, title: str) -> Task:
        task = self.search_task(task_id)
        task.update_title(caller, title)
        return task

    @synchronized
    def update_task_description(self, caller: str, task_id: int, description: Optional[str]) -> Task:
        task = self.search_task(task_id)
        task.update_description(caller, description)
        return task

    @synchronized
    def update_task_due_date(self, caller: str, task_id: int, due_date: DateLike) -> Task:
        task = self.search_task(task_id)
        task.update_due_date(caller, due_date)
        return task

    # === Columns ===

    def get_column_limit(self, column_ordinal: int) -> int:
        return self._limits[Column.from_ordinal(column_ordinal)]

    def get_column_name(self, column_ordinal: int) -> str:
        return Column.from_ordinal(column_ordinal).label

    @synchronized
    def get_column(self, column_ordinal: int) -> Tuple[Task, ...]:
        return tuple(self._columns[Column.from_ordinal(column_ordinal)])

    @synchronized
    def limit_column(self, column_ordinal: int, limit: int) -> None:
        logger.debug("limit_column board=%s column=%s limit=%s", self.id, column_ordinal, limit)
        column = Column.from_ordinal(column_ordinal)
        if limit < UNLIMITED:
            raise reject(logger, ErrorKind.INVALID_ARGUMENT, f"A limit '{limit}' is not valid", limit=limit)
        size = len(self._columns[column])
        if limit != UNLIMITED and size > limit:
            raise reject(
                logger,
                ErrorKind.LIMIT_EXCEEDED,
                f"A column '{column.slug}' size is bigger than the limit {limit}",
                column=int(column),
                limit=limit,
            )
        self._limits[column] = limit
        self.notify(ChangeEvent(EventKind.COLUMN_LIMITED, self.id, payload={"column": int(column), "limit": limit}))

    # === Snapshots and checks ===

    @synchronized
    def snapshot(self) -> BoardSnapshot:
        columns = [[task.snapshot() for task in self._columns[column]] for column in Column]
        return BoardSnapshot(
            id=self.id,
            title=self.title,
            owner=self.owner,
            joined=list(self.joined),
            limits=[self._limits[column] for column in Column],
            taskIdCounter=self.task_id_counter,
            backlog=columns[Column.BACKLOG],
            inProgress=columns[Column.IN_PROGRESS],
            done=columns[Column.DONE],
        )

    @classmethod
    def from_snapshot(cls, snapshot: BoardSnapshot, notify: Optional[Notifier] = None) -> Board:
        """Rebuild a board; the index is derived from the column contents."""
        board = cls(snapshot.id, snapshot.title, snapshot.owner, notify)
        board.joined = [normalize_identity(email) for email in snapshot.joined]
        if board.owner in board.joined:
            raise reject(logger, ErrorKind.INVALID_ARGUMENT, "snapshot lists the owner as a joined member")
        for column in Column:
            limit = snapshot.limits[column]
            tasks = snapshot.column(column)
            if limit < UNLIMITED or (limit != UNLIMITED and len(tasks) > limit):
                raise reject(
                    logger,
                    ErrorKind.INVALID_ARGUMENT,
                    f"snapshot column '{column.slug}' violates its limit {limit}",
                )
            board._limits[column] = limit
            for data in tasks:
                if data.state is not column:
                    raise reject(
                        logger,
                        ErrorKind.INVALID_ARGUMENT,
                        f"snapshot task {data.id} has state '{data.state.slug}' but sits in '{column.slug}'",
                    )
                if data.id in board._index:
                    raise reject(logger, ErrorKind.INVALID_ARGUMENT, f"snapshot task id {data.id} appears twice")
                board._columns[column].append(Task.from_snapshot(data, board.id, board.notify))
                board._index[data.id] = column
        board.task_id_counter = max([snapshot.taskIdCounter, *(task_id + 1 for task_id in board._index)])
        return board

    @synchronized
    def verify(self) -> None:
        """Raise InvariantViolation if the board's redundant state disagrees."""
        seen: Dict[int, Column] = {}
        for column in Column:
            tasks = self._columns[column]
            for task in tasks:
                if task.id in seen:
                    raise fatal(logger, f"task {task.id} is listed in more than one place")
                if task.state is not column:
                    raise fatal(logger, f"task {task.id} has state '{task.state.slug}' but sits in '{column.slug}'")
                seen[task.id] = column
            limit = self._limits[column]
            if limit != UNLIMITED and len(tasks) > limit:
                raise fatal(logger, f"column '{column.slug}' holds {len(tasks)} tasks over its limit {limit}")
        if seen != self._index:
            raise fatal(logger, f"task-state index {self._index} does not match the columns {seen}")
        if self.owner in self.joined:
            raise fatal(logger, f"owner {self.owner} is also listed as joined")

    def _is_full(self, column: Column) -> bool:
        limit = self._limits[column]
        return limit != UNLIMITED and len(self._columns[column]) >= limit

    def _locate(self, task_id: int, column: Column) -> Task:
        for task in self._columns[column]:
            if task.id == task_id:
                return task
        raise fatal(
            logger,
            f"task numbered {task_id} exists in the task-state index and not in the column "
            f"'{column.slug}' where it's supposed to be",
        )
