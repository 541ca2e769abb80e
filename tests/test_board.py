import threading
from datetime import timedelta

import pytest

from taskboard.errors import ErrorKind, InvariantViolation, KanbanError
from taskboard.events import EventKind
from taskboard.models import UNLIMITED, Board, BoardSnapshot, Column
from taskboard.utils import UNASSIGNED

ALICE = "alice@example.com"
BOB = "bob@example.com"


def occupancy(board):
    return tuple(len(board.get_column(column)) for column in Column)


def assigned_task(board, tomorrow, title="Fix bug", assignee=ALICE):
    task = board.add_task(title, tomorrow)
    board.assign_task(assignee, task.id, assignee)
    return task


def kind_of(call, *args):
    with pytest.raises(KanbanError) as err:
        call(*args)
    return err.value.kind


# === Scenarios ===


def test_new_task_lands_in_backlog(board, tomorrow, events):
    task = board.add_task("Fix bug", tomorrow)
    assert task.id == 0
    assert board.get_column(Column.BACKLOG) == (task,)
    assert task.assignee == UNASSIGNED
    assert events[-1].kind is EventKind.TASK_ADDED
    assert events[-1].payload["title"] == "Fix bug"
    board.verify()


def test_assignee_advances_to_in_progress(board, tomorrow):
    task = assigned_task(board, tomorrow)
    board.advance_task(ALICE, Column.BACKLOG, task.id)
    assert occupancy(board) == (0, 1, 0)
    assert task.state is Column.IN_PROGRESS
    board.verify()


def test_limit_blocks_second_advance(board, tomorrow):
    first = assigned_task(board, tomorrow)
    second = assigned_task(board, tomorrow, "Second")
    board.limit_column(Column.IN_PROGRESS, 1)
    board.advance_task(ALICE, Column.BACKLOG, first.id)

    assert kind_of(board.advance_task, ALICE, Column.BACKLOG, second.id) is ErrorKind.LIMIT_EXCEEDED
    assert second.state is Column.BACKLOG
    assert board.get_column(Column.BACKLOG) == (second,)
    board.verify()


def test_done_is_terminal(board, tomorrow):
    task = assigned_task(board, tomorrow)
    board.advance_task(ALICE, Column.BACKLOG, task.id)
    board.advance_task(ALICE, Column.IN_PROGRESS, task.id)
    assert occupancy(board) == (0, 0, 1)

    assert kind_of(board.advance_task, ALICE, Column.DONE, task.id) is ErrorKind.INVALID_ARGUMENT
    assert task.state is Column.DONE
    board.verify()


def test_non_assignee_cannot_advance(board, tomorrow):
    task = assigned_task(board, tomorrow)
    assert kind_of(board.advance_task, BOB, Column.BACKLOG, task.id) is ErrorKind.PERMISSION_DENIED
    assert task.state is Column.BACKLOG
    assert board.get_column(Column.BACKLOG) == (task,)
    assert occupancy(board) == (1, 0, 0)
    board.verify()


def test_transfer_requires_joined_collaborator(board):
    assert kind_of(board.change_owner, board.owner, ALICE) is ErrorKind.INVALID_ARGUMENT
    board.join_board(ALICE)
    board.change_owner("owner@example.com", ALICE)
    assert board.owner == ALICE
    assert board.joined == ["owner@example.com"]
    board.verify()


# === Boundaries ===


def test_full_backlog_rejects_add(board, tomorrow):
    board.add_task("One", tomorrow)
    board.limit_column(Column.BACKLOG, 1)
    assert kind_of(board.add_task, "Two", tomorrow) is ErrorKind.LIMIT_EXCEEDED
    assert occupancy(board) == (1, 0, 0)
    assert board.task_id_counter == 1


def test_zero_limit_blocks_every_add(board, tomorrow):
    board.limit_column(Column.BACKLOG, 0)
    assert kind_of(board.add_task, "One", tomorrow) is ErrorKind.LIMIT_EXCEEDED


def test_wrong_source_column_is_not_found(board, tomorrow):
    task = assigned_task(board, tomorrow)
    assert kind_of(board.advance_task, ALICE, Column.IN_PROGRESS, task.id) is ErrorKind.NOT_FOUND
    assert task.state is Column.BACKLOG


def test_advance_argument_checks(board, tomorrow):
    assigned_task(board, tomorrow)
    assert kind_of(board.advance_task, ALICE, 3, 0) is ErrorKind.NOT_FOUND
    assert kind_of(board.advance_task, ALICE, -1, 0) is ErrorKind.NOT_FOUND
    assert kind_of(board.advance_task, ALICE, Column.BACKLOG, 42) is ErrorKind.NOT_FOUND


def test_limit_below_occupancy_keeps_old_limit(board, tomorrow):
    board.add_task("One", tomorrow)
    board.add_task("Two", tomorrow)
    board.limit_column(Column.BACKLOG, 5)
    assert kind_of(board.limit_column, Column.BACKLOG, 1) is ErrorKind.LIMIT_EXCEEDED
    assert board.get_column_limit(Column.BACKLOG) == 5
    assert kind_of(board.limit_column, Column.BACKLOG, -2) is ErrorKind.INVALID_ARGUMENT
    board.limit_column(Column.BACKLOG, 2)
    board.limit_column(Column.BACKLOG, UNLIMITED)
    assert board.get_column_limit(Column.BACKLOG) == UNLIMITED


def test_leave_unassigns_only_open_tasks(board, tomorrow, events):
    board.join_board(ALICE)
    open_task = assigned_task(board, tomorrow)
    started = assigned_task(board, tomorrow, "Started")
    finished = assigned_task(board, tomorrow, "Finished")
    board.advance_task(ALICE, Column.BACKLOG, started.id)
    board.advance_task(ALICE, Column.BACKLOG, finished.id)
    board.advance_task(ALICE, Column.IN_PROGRESS, finished.id)

    board.leave_board(ALICE)
    assert open_task.assignee == UNASSIGNED
    assert started.assignee == UNASSIGNED
    assert finished.assignee == ALICE
    assert ALICE not in board.joined
    assert EventKind.MEMBER_LEFT in [event.kind for event in events]


def test_membership_errors(board):
    assert kind_of(board.join_board, "Owner@Example.com") is ErrorKind.PERMISSION_DENIED
    board.join_board(ALICE)
    assert kind_of(board.join_board, ALICE) is ErrorKind.ALREADY_EXISTS
    assert kind_of(board.leave_board, BOB) is ErrorKind.INVALID_ARGUMENT
    board.join_board(BOB)
    assert kind_of(board.change_owner, ALICE, BOB) is ErrorKind.PERMISSION_DENIED
    assert board.members == ["owner@example.com", ALICE, BOB]
    assert board.is_member("BOB@example.com")


def test_remove_task(board, tomorrow):
    task = board.add_task("One", tomorrow)
    board.remove_task(task.id)
    assert occupancy(board) == (0, 0, 0)
    assert kind_of(board.remove_task, task.id) is ErrorKind.NOT_FOUND
    # ids are never reused
    assert board.add_task("Two", tomorrow).id == 1
    board.verify()


def test_search_task_forms(board, tomorrow):
    task = board.add_task("One", tomorrow)
    assert board.search_task(task.id) is task
    assert board.search_task(task.id, Column.BACKLOG) is task
    assert kind_of(board.search_task, task.id, Column.DONE) is ErrorKind.NOT_FOUND


def test_column_names_are_stable(board):
    assert [board.get_column_name(column) for column in Column] == ["backlog", "in progress", "done"]
    assert board.get_column_name(1) == board.get_column_name(1)
    assert kind_of(board.get_column_name, 5) is ErrorKind.NOT_FOUND


def test_get_column_returns_a_copy(board, tomorrow):
    board.add_task("One", tomorrow)
    column = board.get_column(Column.BACKLOG)
    assert isinstance(column, tuple)
    board.add_task("Two", tomorrow)
    assert len(column) == 1


# === Snapshots and invariants ===


def test_snapshot_round_trip(board, tomorrow):
    board.join_board(ALICE)
    for title in ("One", "Two", "Three"):
        assigned_task(board, tomorrow, title)
    board.advance_task(ALICE, Column.BACKLOG, 1)
    board.advance_task(ALICE, Column.BACKLOG, 0)
    board.advance_task(ALICE, Column.IN_PROGRESS, 1)
    board.limit_column(Column.IN_PROGRESS, 3)

    snapshot = board.snapshot()
    copy = Board.from_snapshot(BoardSnapshot.model_validate_json(snapshot.model_dump_json()))
    assert copy.snapshot() == snapshot
    assert copy.title == board.title
    assert [t.id for t in copy.get_column(Column.IN_PROGRESS)] == [0]
    assert [t.id for t in copy.get_column(Column.DONE)] == [1]
    assert copy.add_task("Four", tomorrow).id == 3
    copy.verify()


def test_from_snapshot_rejects_inconsistent_state(board, tomorrow):
    board.add_task("One", tomorrow)
    data = board.snapshot().model_dump()
    data["inProgress"] = data["backlog"]
    with pytest.raises(KanbanError) as err:
        Board.from_snapshot(BoardSnapshot.model_validate(data))
    assert err.value.kind is ErrorKind.INVALID_ARGUMENT


def test_from_snapshot_rejects_duplicate_ids(board, tomorrow):
    board.add_task("One", tomorrow)
    data = board.snapshot().model_dump()
    data["backlog"] = data["backlog"] * 2
    with pytest.raises(KanbanError):
        Board.from_snapshot(BoardSnapshot.model_validate(data))


def test_corrupted_index_is_fatal(board, tomorrow):
    task = assigned_task(board, tomorrow)
    board._index[task.id] = Column.DONE
    with pytest.raises(InvariantViolation):
        board.search_task(task.id)
    with pytest.raises(InvariantViolation):
        board.verify()


def test_verify_detects_state_mismatch(board, tomorrow):
    task = board.add_task("One", tomorrow)
    task.state = Column.IN_PROGRESS
    with pytest.raises(InvariantViolation):
        board.verify()


def test_notifier_failure_keeps_the_mutation(tomorrow):
    def broken(event):
        if event.kind is EventKind.TASK_ADVANCED:
            raise RuntimeError("sink down")

    board = Board(0, "B", "owner@example.com", broken)
    task = board.add_task("One", tomorrow)
    board.assign_task(ALICE, task.id, ALICE)
    with pytest.raises(RuntimeError):
        board.advance_task(ALICE, Column.BACKLOG, task.id)
    assert task.state is Column.IN_PROGRESS
    board.verify()


def test_concurrent_advances_respect_limit(tomorrow):
    board = Board(0, "B", "owner@example.com")
    tasks = [assigned_task(board, tomorrow, f"T{i}") for i in range(20)]
    board.limit_column(Column.IN_PROGRESS, 5)
    barrier = threading.Barrier(len(tasks))
    outcomes = []

    def advance(task):
        barrier.wait()
        try:
            board.advance_task(ALICE, Column.BACKLOG, task.id)
            outcomes.append("ok")
        except KanbanError as err:
            outcomes.append(err.kind)

    threads = [threading.Thread(target=advance, args=(task,)) for task in tasks]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert outcomes.count("ok") == 5
    assert outcomes.count(ErrorKind.LIMIT_EXCEEDED) == 15
    assert occupancy(board) == (15, 5, 0)
    board.verify()


def test_due_date_update_through_board(board, tomorrow):
    task = assigned_task(board, tomorrow)
    later = tomorrow + timedelta(days=10)
    board.update_task_due_date(ALICE, task.id, later)
    board.update_task_title(ALICE, task.id, "Renamed")
    board.update_task_description(ALICE, task.id, None)
    assert task.due_date.date() == later
    assert task.title == "Renamed"
    assert task.description == ""


def test_leave_releases_tasks_before_notifying(tomorrow):
    def broken(event):
        if event.kind is EventKind.MEMBER_LEFT:
            raise RuntimeError("sink down")

    board = Board(0, "B", "owner@example.com", broken)
    board.join_board(ALICE)
    task = assigned_task(board, tomorrow)
    with pytest.raises(RuntimeError):
        board.leave_board(ALICE)
    assert ALICE not in board.joined
    assert task.assignee == UNASSIGNED
