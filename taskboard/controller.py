from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Union

from .auth import Authorizer
from .errors import ErrorKind, reject
from .events import ChangeEvent, EventKind, Notifier, log_only
from .models import Board, BoardSnapshot, Column, Task
from .utils import DateLike, normalize_identity

logger = logging.getLogger(__name__)

# A board is addressed by its id, or by its title among the caller's boards.
BoardRef = Union[int, str]


def _same_title(left: str, right: str) -> bool:
    return left.strip().lower() == right.strip().lower()


class BoardController:
    """All boards, seen through the caller's owned and joined boards.

    Every public operation first checks that the caller exists and is logged
    in, then resolves the board and delegates to it. The controller keeps the
    membership index (``owned`` / ``joined`` board ids per user) in step with
    each board's own owner and joined list.
    """

    def __init__(self, authorizer: Authorizer, notify: Optional[Notifier] = None) -> None:
        self.authorizer = authorizer
        self.notify: Notifier = notify or log_only
        self.boards: Dict[int, Board] = {}
        self._owned: Dict[str, List[int]] = defaultdict(list)
        self._joined: Dict[str, List[int]] = defaultdict(list)
        self._next_id = 0
        self._lock = threading.RLock()

    # === Boards ===

    def add_board(self, email: str, title: str) -> Board:
        email = self._validate_user(email)
        logger.debug("add_board user=%s title=%r", email, title)
        if not title or not title.strip():
            raise reject(logger, ErrorKind.INVALID_ARGUMENT, "board name is empty")
        with self._lock:
            if any(_same_title(self.boards[i].title, title) for i in self._owned.get(email, [])):
                raise reject(
                    logger,
                    ErrorKind.ALREADY_EXISTS,
                    f"board '{title}' already exists for {email}",
                    title=title,
                )
            board = Board(self._next_id, title, email, self.notify)
            self._next_id += 1
            self.boards[board.id] = board
            self._owned[email].append(board.id)
            self.notify(ChangeEvent(EventKind.BOARD_ADDED, board.id, payload={"title": title, "owner": email}))
        logger.debug("add_board success id=%s", board.id)
        return board

    def remove_board(self, email: str, board: BoardRef) -> None:
        email = self._validate_user(email)
        logger.debug("remove_board user=%s board=%r", email, board)
        with self._lock:
            target = self._resolve(email, board)
            if target.owner != email:
                raise reject(
                    logger,
                    ErrorKind.PERMISSION_DENIED,
                    "user has not permission to do RemoveBoard",
                    board=target.id,
                )
            del self.boards[target.id]
            self._owned[email].remove(target.id)
            for member in target.joined:
                self._joined[member].remove(target.id)
            self.notify(ChangeEvent(EventKind.BOARD_REMOVED, target.id))

    def search_board(self, email: str, board: BoardRef) -> Board:
        email = self._validate_user(email)
        with self._lock:
            return self._resolve(email, board)

    def get_boards(self, email: str) -> List[Board]:
        """Owned boards first, then joined ones, each in the order acquired."""
        email = self._validate_user(email)
        with self._lock:
            return [self.boards[i] for i in self._board_ids(email)]

    def get_board_ids(self, email: str) -> List[int]:
        return [board.id for board in self.get_boards(email)]

    def snapshot(self, email: str, board: BoardRef) -> BoardSnapshot:
        return self.search_board(email, board).snapshot()

    # === Membership ===

    def join_board(self, email: str, board_id: int) -> None:
        email = self._validate_user(email)
        logger.debug("join_board user=%s board=%s", email, board_id)
        with self._lock:
            board = self.boards.get(board_id)
            if board is None:
                raise reject(
                    logger,
                    ErrorKind.NOT_FOUND,
                    f"A board with id '{board_id}' doesn't exist in the system",
                    board=board_id,
                )
            try:
                board.join_board(email)
            finally:
                self._sync_membership(board, email)

    def leave_board(self, email: str, board: BoardRef) -> None:
        email = self._validate_user(email)
        logger.debug("leave_board user=%s board=%r", email, board)
        with self._lock:
            target = self._resolve(email, board)
            if target.owner == email:
                raise reject(
                    logger,
                    ErrorKind.PERMISSION_DENIED,
                    f"user '{email}' is the board's owner",
                    board=target.id,
                )
            try:
                target.leave_board(email)
            finally:
                self._sync_membership(target, email)

    def change_owner(self, current_owner: str, new_owner: str, board: BoardRef) -> None:
        current_owner = self._validate_user(current_owner)
        new_owner = normalize_identity(new_owner)
        logger.debug("change_owner board=%r from=%s to=%s", board, current_owner, new_owner)
        with self._lock:
            target = self._resolve(current_owner, board)
            if target.owner == new_owner:
                raise reject(
                    logger,
                    ErrorKind.ALREADY_EXISTS,
                    f"user '{new_owner}' is already the board's owner",
                    board=target.id,
                )
            if target.owner != current_owner:
                raise reject(logger, ErrorKind.PERMISSION_DENIED, "user isn't the board's owner", board=target.id)
            if new_owner in target.joined and any(
                _same_title(self.boards[i].title, target.title) for i in self._owned.get(new_owner, [])
            ):
                raise reject(
                    logger,
                    ErrorKind.ALREADY_EXISTS,
                    f"user '{new_owner}' already owns a board titled '{target.title}'",
                    board=target.id,
                )
            try:
                target.change_owner(current_owner, new_owner)
            finally:
                self._sync_membership(target, current_owner, new_owner)

    # === Tasks ===

    def add_task(
        self,
        email: str,
        board: BoardRef,
        title: str,
        due_date: DateLike,
        description: Optional[str] = "",
    ) -> Task:
        return self.search_board(email, board).add_task(title, due_date, description)

    def remove_task(self, email: str, board: BoardRef, task_id: int) -> None:
        self.search_board(email, board).remove_task(task_id)

    def advance_task(self, email: str, board: BoardRef, column_ordinal: int, task_id: int) -> Task:
        email = normalize_identity(email)
        return self.search_board(email, board).advance_task(email, column_ordinal, task_id)

    def assign_task(self, email: str, board: BoardRef, task_id: int, assignee: str) -> Task:
        return self.search_board(email, board).assign_task(email, task_id, assignee)

    def update_task_title(self, email: str, board: BoardRef, task_id: int, title: str) -> Task:
        return self.search_board(email, board).update_task_title(email, task_id, title)

    def update_task_description(
        self, email: str, board: BoardRef, task_id: int, description: Optional[str]
    ) -> Task:
        return self.search_board(email, board).update_task_description(email, task_id, description)

    def update_task_due_date(self, email: str, board: BoardRef, task_id: int, due_date: DateLike) -> Task:
        return self.search_board(email, board).update_task_due_date(email, task_id, due_date)

    def get_all_tasks_by_state(self, email: str, column_ordinal: int) -> List[Task]:
        boards = self.get_boards(email)
        column = Column.from_ordinal(column_ordinal)
        tasks: List[Task] = []
        for board in boards:
            tasks.extend(board.get_column(column))
        return tasks

    def get_in_progress_tasks(self, email: str) -> List[Task]:
        return self.get_all_tasks_by_state(email, Column.IN_PROGRESS)

    # === Columns ===

    def limit_column(self, email: str, board: BoardRef, column_ordinal: int, limit: int) -> None:
        self.search_board(email, board).limit_column(column_ordinal, limit)

    def get_column_limit(self, email: str, board: BoardRef, column_ordinal: int) -> int:
        return self.search_board(email, board).get_column_limit(column_ordinal)

    def get_column_name(self, email: str, board: BoardRef, column_ordinal: int) -> str:
        return self.search_board(email, board).get_column_name(column_ordinal)

    def get_column(self, email: str, board: BoardRef, column_ordinal: int) -> List[Task]:
        return list(self.search_board(email, board).get_column(column_ordinal))

    # === Recovery ===

    def restore(self, snapshots: Iterable[BoardSnapshot]) -> None:
        """Load persisted boards; board ids continue after the highest one."""
        with self._lock:
            for snapshot in snapshots:
                board = Board.from_snapshot(snapshot, self.notify)
                self.boards[board.id] = board
                self._owned[board.owner].append(board.id)
                for member in board.joined:
                    self._joined[member].append(board.id)
                self._next_id = max(self._next_id, board.id + 1)
        logger.info("restored %d boards", len(self.boards))

    # === Helpers ===

    def _validate_user(self, email: str) -> str:
        email = normalize_identity(email)
        if not self.authorizer.exists(email):
            raise reject(
                logger,
                ErrorKind.NOT_FOUND,
                f"A user with the email '{email}' doesn't exist in the system",
                user=email,
            )
        if not self.authorizer.is_logged_in(email):
            raise reject(logger, ErrorKind.PERMISSION_DENIED, f"user '{email}' isn't logged in", user=email)
        return email

    def _sync_membership(self, board: Board, *emails: str) -> None:
        """Align the owned/joined pointers of ``emails`` with the board's own membership.

        Called after every membership change on the board, including one whose
        notifier raised after the change was applied.
        """
        for email in emails:
            for index, member in ((self._owned, board.owner == email), (self._joined, email in board.joined)):
                ids = index[email]
                if member and board.id not in ids:
                    ids.append(board.id)
                elif not member and board.id in ids:
                    ids.remove(board.id)

    def _board_ids(self, email: str) -> List[int]:
        return [*self._owned.get(email, []), *self._joined.get(email, [])]

    def _resolve(self, email: str, board: BoardRef) -> Board:
        ids = self._board_ids(email)
        if isinstance(board, int):
            if board in ids:
                return self.boards[board]
            raise reject(logger, ErrorKind.NOT_FOUND, f"A board with Id '{board}' doesn't exists", board=board)
        for board_id in ids:
            if _same_title(self.boards[board_id].title, board):
                return self.boards[board_id]
        raise reject(
            logger,
            ErrorKind.NOT_FOUND,
            f"A board titled '{board}' doesn't exists for the user with the email {email}",
            title=board,
        )
