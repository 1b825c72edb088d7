"""Board membership checks.

Membership is always read from the board's current member set; nothing is
cached between requests or realtime events.
"""

from __future__ import annotations

from typing import Optional

from .db import Board, BoardList, Task
from .errors import ForbiddenError, NotFoundError
from .storage import HierarchyStore


def is_member(user_id: str, board: Board) -> bool:
    return any(member.id == user_id for member in board.members)


def require_member(user_id: str, board: Board) -> Board:
    if not is_member(user_id, board):
        raise ForbiddenError()
    return board


def board_for_id(store: HierarchyStore, board_id: Optional[str]) -> Board:
    board = store.get_board(board_id) if board_id else None
    if board is None:
        raise NotFoundError("Board not found")
    return board


def board_for_list(store: HierarchyStore, list_id: Optional[str]) -> tuple[BoardList, Board]:
    board_list = store.get_list(list_id) if list_id else None
    if board_list is None:
        raise NotFoundError("List not found")
    return board_list, board_for_id(store, board_list.board_id)


def board_for_task(store: HierarchyStore, task_id: str) -> tuple[Task, BoardList, Board]:
    task = store.get_task(task_id)
    if task is None:
        raise NotFoundError("Task not found")
    board_list, board = board_for_list(store, task.list_id)
    return task, board_list, board
