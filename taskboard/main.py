from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse

from .auth import UserDirectory, get_current_user
from .config import Settings, configure_logging
from .controller import BoardController
from .db import SqlEventSink
from .errors import ErrorKind, KanbanError
from .events import Notifier, log_only
from .models import Board, Column, Task
from .schemas import (
    AdvanceIn,
    AssignIn,
    BoardIn,
    BoardOut,
    BoardsPage,
    BoardView,
    ColumnOut,
    ErrorEnvelope,
    Health,
    LimitIn,
    TaskIn,
    TaskOut,
    TaskPatch,
    TransferIn,
    UserIn,
    UserOut,
    Version,
)
from .utils import new_request_id, normalize_identity

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.PERMISSION_DENIED: 403,
    ErrorKind.INVALID_ARGUMENT: 422,
    ErrorKind.LIMIT_EXCEEDED: 409,
    ErrorKind.ALREADY_EXISTS: 409,
}


# === Helpers ===


def board_out(board: Board, user: str) -> BoardOut:
    snapshot = board.snapshot()
    return BoardOut(
        id=snapshot.id,
        title=snapshot.title,
        owner=snapshot.owner,
        joined=snapshot.joined,
        limits=snapshot.limits,
        myRole="owner" if snapshot.owner == user else "member",
        taskCount=sum(len(snapshot.column(column)) for column in Column),
    )


def task_out(task: Task) -> TaskOut:
    return TaskOut(
        id=task.id,
        boardId=task.board_id,
        title=task.title,
        description=task.description,
        creationTime=task.creation_time,
        dueDate=task.due_date,
        assignee=task.assignee,
        column=int(task.state),
        state=task.state.slug,
    )


def column_out(board: Board, column: int) -> ColumnOut:
    return ColumnOut(
        boardId=board.id,
        column=column,
        name=board.get_column_name(column),
        limit=board.get_column_limit(column),
        tasks=[task_out(task) for task in board.get_column(column)],
    )


def get_controller(request: Request) -> BoardController:
    return request.app.state.controller


def get_users(request: Request) -> UserDirectory:
    return request.app.state.users


def build_controller(settings: Settings, users: UserDirectory) -> BoardController:
    """Wire the board controller to the SQL sink when a database is configured."""
    if not settings.database_url:
        return BoardController(users, log_only)
    sink = SqlEventSink.from_url(settings.database_url)
    notify: Notifier = sink
    controller = BoardController(users, notify)
    controller.restore(sink.load_snapshots())
    return controller


def create_app(
    settings: Optional[Settings] = None,
    users: Optional[UserDirectory] = None,
    controller: Optional[BoardController] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings)
    users = users or UserDirectory()
    controller = controller or build_controller(settings, users)

    app = FastAPI(title="Taskboard API", version=settings.api_version)
    app.state.settings = settings
    app.state.users = users
    app.state.controller = controller

    @app.exception_handler(KanbanError)
    async def kanban_error_handler(request: Request, exc: KanbanError) -> JSONResponse:
        envelope = ErrorEnvelope(
            code=exc.kind.value,
            message=exc.message,
            details=exc.details or None,
            requestId=request.headers.get("X-Request-Id") or new_request_id(),
        )
        return JSONResponse(status_code=STATUS_BY_KIND[exc.kind], content=envelope.model_dump())

    # === Health & metadata ===

    @app.get("/v1/health", response_model=Health)
    def health() -> Health:
        return Health()

    @app.get("/v1/version", response_model=Version)
    def version(request: Request) -> Version:
        return Version(version=request.app.state.settings.api_version)

    # === Users & sessions ===

    @app.post("/v1/users", response_model=UserOut, status_code=201)
    def register(payload: UserIn, users: UserDirectory = Depends(get_users)):
        users.register(payload.email, payload.password)
        email = normalize_identity(payload.email)
        return UserOut(email=email, loggedIn=users.is_logged_in(email))

    @app.post("/v1/sessions", response_model=UserOut)
    def log_in(payload: UserIn, users: UserDirectory = Depends(get_users)):
        users.log_in(payload.email, payload.password)
        return UserOut(email=normalize_identity(payload.email), loggedIn=True)

    @app.delete("/v1/sessions", status_code=204)
    def log_out(user: str = Depends(get_current_user), users: UserDirectory = Depends(get_users)):
        users.log_out(user)
        return Response(status_code=204)

    # === Board endpoints ===

    @app.post("/v1/boards", response_model=BoardOut, status_code=201)
    def create_board(
        payload: BoardIn,
        user: str = Depends(get_current_user),
        boards: BoardController = Depends(get_controller),
    ):
        return board_out(boards.add_board(user, payload.title), user)

    @app.get("/v1/boards", response_model=BoardsPage)
    def list_boards(user: str = Depends(get_current_user), boards: BoardController = Depends(get_controller)):
        return BoardsPage(boards=[board_out(board, user) for board in boards.get_boards(user)])

    @app.get("/v1/boards/{board_id}", response_model=BoardView)
    def get_board(
        board_id: int,
        user: str = Depends(get_current_user),
        boards: BoardController = Depends(get_controller),
    ):
        board = boards.search_board(user, board_id)
        return BoardView(
            board=board_out(board, user),
            columns=[column_out(board, column) for column in Column],
        )

    @app.delete("/v1/boards/{board_id}", status_code=204)
    def delete_board(
        board_id: int,
        user: str = Depends(get_current_user),
        boards: BoardController = Depends(get_controller),
    ):
        boards.remove_board(user, board_id)
        return Response(status_code=204)

    @app.post("/v1/boards/{board_id}:join", response_model=BoardOut)
    def join_board(
        board_id: int,
        user: str = Depends(get_current_user),
        boards: BoardController = Depends(get_controller),
    ):
        boards.join_board(user, board_id)
        return board_out(boards.search_board(user, board_id), user)

    @app.post("/v1/boards/{board_id}:leave", status_code=204)
    def leave_board(
        board_id: int,
        user: str = Depends(get_current_user),
        boards: BoardController = Depends(get_controller),
    ):
        boards.leave_board(user, board_id)
        return Response(status_code=204)

    @app.post("/v1/boards/{board_id}:transfer", response_model=BoardOut)
    def transfer_board(
        board_id: int,
        payload: TransferIn,
        user: str = Depends(get_current_user),
        boards: BoardController = Depends(get_controller),
    ):
        boards.change_owner(user, payload.newOwner, board_id)
        return board_out(boards.search_board(user, board_id), user)

    # === Column endpoints ===

    @app.get("/v1/boards/{board_id}/columns/{column}", response_model=ColumnOut)
    def get_column(
        board_id: int,
        column: int,
        user: str = Depends(get_current_user),
        boards: BoardController = Depends(get_controller),
    ):
        return column_out(boards.search_board(user, board_id), column)

    @app.put("/v1/boards/{board_id}/columns/{column}/limit", response_model=ColumnOut)
    def limit_column(
        board_id: int,
        column: int,
        payload: LimitIn,
        user: str = Depends(get_current_user),
        boards: BoardController = Depends(get_controller),
    ):
        boards.limit_column(user, board_id, column, payload.limit)
        return column_out(boards.search_board(user, board_id), column)

    # === Task endpoints ===

    @app.post("/v1/boards/{board_id}/tasks", response_model=TaskOut, status_code=201)
    def create_task(
        board_id: int,
        payload: TaskIn,
        user: str = Depends(get_current_user),
        boards: BoardController = Depends(get_controller),
    ):
        task = boards.add_task(user, board_id, payload.title, payload.dueDate, payload.description)
        return task_out(task)

    @app.patch("/v1/boards/{board_id}/tasks/{task_id}", response_model=TaskOut)
    def update_task(
        board_id: int,
        task_id: int,
        payload: TaskPatch,
        user: str = Depends(get_current_user),
        boards: BoardController = Depends(get_controller),
    ):
        task = boards.search_board(user, board_id).search_task(task_id)
        if payload.title is not None:
            task = boards.update_task_title(user, board_id, task_id, payload.title)
        if "description" in payload.model_fields_set:
            task = boards.update_task_description(user, board_id, task_id, payload.description)
        if payload.dueDate is not None:
            task = boards.update_task_due_date(user, board_id, task_id, payload.dueDate)
        return task_out(task)

    @app.delete("/v1/boards/{board_id}/tasks/{task_id}", status_code=204)
    def delete_task(
        board_id: int,
        task_id: int,
        user: str = Depends(get_current_user),
        boards: BoardController = Depends(get_controller),
    ):
        boards.remove_task(user, board_id, task_id)
        return Response(status_code=204)

    @app.post("/v1/boards/{board_id}/tasks/{task_id}:assign", response_model=TaskOut)
    def assign_task(
        board_id: int,
        task_id: int,
        payload: AssignIn,
        user: str = Depends(get_current_user),
        boards: BoardController = Depends(get_controller),
    ):
        return task_out(boards.assign_task(user, board_id, task_id, payload.assignee))

    @app.post("/v1/boards/{board_id}/tasks/{task_id}:advance", response_model=TaskOut)
    def advance_task(
        board_id: int,
        task_id: int,
        payload: AdvanceIn,
        user: str = Depends(get_current_user),
        boards: BoardController = Depends(get_controller),
    ):
        return task_out(boards.advance_task(user, board_id, payload.column, task_id))

    @app.get("/v1/tasks", response_model=list[TaskOut])
    def tasks_by_state(
        column: int = int(Column.IN_PROGRESS),
        user: str = Depends(get_current_user),
        boards: BoardController = Depends(get_controller),
    ):
        return [task_out(task) for task in boards.get_all_tasks_by_state(user, column)]

    return app


app = create_app()
