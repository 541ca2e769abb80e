from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy import (
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, sessionmaker

from .events import ChangeEvent, EventKind
from .models import UNLIMITED, BoardSnapshot, Column, TaskSnapshot
from .utils import now_utc

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class IsoDateTime(TypeDecorator):
    """Datetime kept as ISO-8601 text; naive values stay naive and offsets survive SQLite."""

    impl = String(40)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[str]:
        return None if value is None else value.isoformat()

    def process_result_value(self, value: Optional[str], dialect) -> Optional[datetime]:
        return None if value is None else datetime.fromisoformat(value)


class BoardRow(Base):
    __tablename__ = "boards"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    title: Mapped[str] = mapped_column(String(140))
    owner: Mapped[str] = mapped_column(String(320), index=True)
    backlog_limit: Mapped[int] = mapped_column(Integer, default=UNLIMITED)
    in_progress_limit: Mapped[int] = mapped_column(Integer, default=UNLIMITED)
    done_limit: Mapped[int] = mapped_column(Integer, default=UNLIMITED)
    task_id_counter: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)

    tasks: Mapped[List[TaskRow]] = relationship(back_populates="board", cascade="all, delete-orphan")
    members: Mapped[List[BoardMemberRow]] = relationship(back_populates="board", cascade="all, delete-orphan")


class TaskRow(Base):
    __tablename__ = "tasks"
    board_id: Mapped[int] = mapped_column(Integer, ForeignKey("boards.id", ondelete="CASCADE"), primary_key=True)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    title: Mapped[str] = mapped_column(String(50))
    description: Mapped[str] = mapped_column(Text, default="")
    creation_time: Mapped[date] = mapped_column(Date)
    due_date: Mapped[datetime] = mapped_column(IsoDateTime)
    assignee: Mapped[str] = mapped_column(String(320))
    state: Mapped[int] = mapped_column(Integer, default=int(Column.BACKLOG))
    # order of arrival in the task's current column
    position: Mapped[int] = mapped_column(Integer, index=True)

    board: Mapped[BoardRow] = relationship(back_populates="tasks")


class BoardMemberRow(Base):
    __tablename__ = "board_members"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    board_id: Mapped[int] = mapped_column(Integer, ForeignKey("boards.id", ondelete="CASCADE"))
    email: Mapped[str] = mapped_column(String(320))

    board: Mapped[BoardRow] = relationship(back_populates="members")

    __table_args__ = (UniqueConstraint("board_id", "email", name="uq_member"),)


_LIMIT_ATTRS = {
    Column.BACKLOG: "backlog_limit",
    Column.IN_PROGRESS: "in_progress_limit",
    Column.DONE: "done_limit",
}

_TASK_FIELDS = {
    "title": "title",
    "description": "description",
    "assignee": "assignee",
    "dueDate": "due_date",
}


def make_engine(database_url: str) -> Engine:
    return create_engine(
        database_url,
        connect_args={"check_same_thread": False} if database_url.startswith("sqlite") else {},
    )


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)


class SqlEventSink:
    """Replays board change events into SQL tables.

    Used as the board controller's notifier; ``load_snapshots`` reads the
    tables back for recovery.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory
        self._handlers: Dict[EventKind, Callable[[Session, ChangeEvent], None]] = {
            EventKind.BOARD_ADDED: self._board_added,
            EventKind.BOARD_REMOVED: self._board_removed,
            EventKind.TASK_ADDED: self._task_added,
            EventKind.TASK_REMOVED: self._task_removed,
            EventKind.TASK_ADVANCED: self._task_advanced,
            EventKind.TASK_UPDATED: self._task_updated,
            EventKind.COLUMN_LIMITED: self._column_limited,
            EventKind.MEMBER_JOINED: self._member_joined,
            EventKind.MEMBER_LEFT: self._member_left,
            EventKind.OWNER_CHANGED: self._owner_changed,
        }

    @classmethod
    def from_url(cls, database_url: str) -> SqlEventSink:
        engine = make_engine(database_url)
        init_db(engine)
        return cls(sessionmaker(bind=engine, autoflush=False))

    def __call__(self, event: ChangeEvent) -> None:
        logger.debug("persist %s board=%s task=%s", event.kind.value, event.board_id, event.task_id)
        with self.session_factory.begin() as session:
            self._handlers[event.kind](session, event)

    # === Event handlers ===

    def _board_added(self, session: Session, event: ChangeEvent) -> None:
        session.add(BoardRow(id=event.board_id, title=event.payload["title"], owner=event.payload["owner"]))

    def _board_removed(self, session: Session, event: ChangeEvent) -> None:
        row = session.get(BoardRow, event.board_id)
        if row is not None:
            session.delete(row)

    def _task_added(self, session: Session, event: ChangeEvent) -> None:
        task = TaskSnapshot.model_validate(event.payload)
        session.add(
            TaskRow(
                board_id=event.board_id,
                id=task.id,
                title=task.title,
                description=task.description,
                creation_time=task.creationTime,
                due_date=task.dueDate,
                assignee=task.assignee,
                state=int(task.state),
                position=self._next_position(session, event.board_id),
            )
        )
        board = session.get(BoardRow, event.board_id)
        board.task_id_counter = max(board.task_id_counter, task.id + 1)

    def _task_removed(self, session: Session, event: ChangeEvent) -> None:
        session.execute(delete(TaskRow).where(TaskRow.board_id == event.board_id, TaskRow.id == event.task_id))

    def _task_advanced(self, session: Session, event: ChangeEvent) -> None:
        row = session.get(TaskRow, (event.board_id, event.task_id))
        row.state = event.payload["state"]
        row.position = self._next_position(session, event.board_id)

    def _task_updated(self, session: Session, event: ChangeEvent) -> None:
        row = session.get(TaskRow, (event.board_id, event.task_id))
        for key, value in event.payload.items():
            if key == "dueDate":
                value = datetime.fromisoformat(value)
            setattr(row, _TASK_FIELDS[key], value)

    def _column_limited(self, session: Session, event: ChangeEvent) -> None:
        board = session.get(BoardRow, event.board_id)
        setattr(board, _LIMIT_ATTRS[Column(event.payload["column"])], event.payload["limit"])

    def _member_joined(self, session: Session, event: ChangeEvent) -> None:
        session.add(BoardMemberRow(board_id=event.board_id, email=event.payload["email"]))

    def _member_left(self, session: Session, event: ChangeEvent) -> None:
        session.execute(
            delete(BoardMemberRow).where(
                BoardMemberRow.board_id == event.board_id,
                BoardMemberRow.email == event.payload["email"],
            )
        )

    def _owner_changed(self, session: Session, event: ChangeEvent) -> None:
        board = session.get(BoardRow, event.board_id)
        board.owner = event.payload["owner"]
        self._member_left(session, ChangeEvent(EventKind.MEMBER_LEFT, event.board_id, payload={"email": board.owner}))
        session.add(BoardMemberRow(board_id=event.board_id, email=event.payload["former"]))

    @staticmethod
    def _next_position(session: Session, board_id: int) -> int:
        current = session.scalar(select(func.max(TaskRow.position)).where(TaskRow.board_id == board_id))
        return 0 if current is None else current + 1

    # === Recovery ===

    def load_snapshots(self) -> List[BoardSnapshot]:
        snapshots: List[BoardSnapshot] = []
        with self.session_factory() as session:
            for board in session.scalars(select(BoardRow).order_by(BoardRow.id)):
                columns: Dict[Column, List[TaskSnapshot]] = {column: [] for column in Column}
                tasks = sorted(board.tasks, key=lambda t: t.position)
                for row in tasks:
                    columns[Column(row.state)].append(
                        TaskSnapshot(
                            id=row.id,
                            title=row.title,
                            description=row.description,
                            creationTime=row.creation_time,
                            dueDate=row.due_date,
                            assignee=row.assignee,
                            state=Column(row.state),
                        )
                    )
                members = sorted(board.members, key=lambda m: m.id)
                snapshots.append(
                    BoardSnapshot(
                        id=board.id,
                        title=board.title,
                        owner=board.owner,
                        joined=[m.email for m in members],
                        limits=[getattr(board, _LIMIT_ATTRS[column]) for column in Column],
                        taskIdCounter=board.task_id_counter,
                        backlog=columns[Column.BACKLOG],
                        inProgress=columns[Column.IN_PROGRESS],
                        done=columns[Column.DONE],
                    )
                )
        logger.info("loaded %d boards from the database", len(snapshots))
        return snapshots
