"""Command handlers for accounts, boards, lists and tasks.

Every handler validates its input, resolves the owning board from current
data, checks membership and only then mutates the store. Mutating handlers
return the ``RoomEvent`` that the caller publishes once the transaction has
committed, so realtime viewers only ever see persisted state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from .access import board_for_id, board_for_list, board_for_task, require_member
from .auth import TokenService, hash_password, verify_password
from .db import Board, BoardList, Task, User, now_utc
from .errors import NotFoundError, UnauthorizedError, ValidationError
from .schemas import (
    AuthResult,
    BoardCreate,
    BoardDetail,
    BoardOut,
    ListCreate,
    ListDetail,
    ListOut,
    LoginRequest,
    MemberAdd,
    RegisterRequest,
    TaskCreate,
    TaskOut,
    TaskUpdate,
    UserSummary,
)
from .storage import HierarchyStore

LOGGER = logging.getLogger(__name__)


@dataclass
class RoomEvent:
    board_id: str
    name: str
    data: dict[str, Any] = field(default_factory=dict)


# === Serialization helpers ===


def user_summary(user: User) -> UserSummary:
    return UserSummary(id=user.id, name=user.name, email=user.email)


def task_out(task: Task) -> TaskOut:
    return TaskOut(
        id=task.id,
        listId=task.list_id,
        title=task.title,
        description=task.description,
        status=task.status,
        position=task.position,
        assignees=[user_summary(u) for u in task.assignees],
        createdAt=task.created_at,
        updatedAt=task.updated_at,
    )


def list_out(board_list: BoardList) -> ListOut:
    return ListOut(
        id=board_list.id,
        boardId=board_list.board_id,
        name=board_list.name,
        position=board_list.position,
        taskIds=[t.id for t in board_list.tasks],
        createdAt=board_list.created_at,
        updatedAt=board_list.updated_at,
    )


def board_out(board: Board) -> BoardOut:
    return BoardOut(
        id=board.id,
        name=board.name,
        description=board.description,
        members=[user_summary(u) for u in board.members],
        lists=[list_out(lst) for lst in board.lists],
        createdAt=board.created_at,
        updatedAt=board.updated_at,
    )


def board_detail(board: Board) -> BoardDetail:
    lists = [
        ListDetail(**list_out(lst).model_dump(), tasks=[task_out(t) for t in lst.tasks])
        for lst in board.lists
    ]
    return BoardDetail(
        id=board.id,
        name=board.name,
        description=board.description,
        members=[user_summary(u) for u in board.members],
        lists=lists,
        createdAt=board.created_at,
        updatedAt=board.updated_at,
    )


def _task_payload(task: Task) -> dict[str, Any]:
    return task_out(task).model_dump(mode="json")


def _resolve_assignees(store: HierarchyStore, board: Board, user_ids: list[str]) -> list[User]:
    wanted = list(dict.fromkeys(user_ids))
    users = {u.id: u for u in store.users_by_ids(wanted)}
    missing = [uid for uid in wanted if uid not in users]
    if missing:
        raise ValidationError(f"Unknown assignee: {missing[0]}")
    member_ids = {m.id for m in board.members}
    outsiders = [uid for uid in wanted if uid not in member_ids]
    if outsiders:
        raise ValidationError(f"Assignee {outsiders[0]} is not a member of this board")
    return [users[uid] for uid in wanted]


# === Accounts ===


def register(store: HierarchyStore, tokens: TokenService, payload: RegisterRequest) -> AuthResult:
    email = str(payload.email).strip().lower()
    with store.atomic():
        if store.get_user_by_email(email) is not None:
            raise ValidationError("Email already registered")
        user = store.create_user(payload.name, email, hash_password(payload.password))
    LOGGER.info("user registered: %s", user.id)
    return AuthResult(user=user_summary(user), token=tokens.issue(user.id))


def login(store: HierarchyStore, tokens: TokenService, payload: LoginRequest) -> AuthResult:
    user = store.get_user_by_email(str(payload.email).strip().lower())
    if user is None or not verify_password(payload.password, user.password_hash):
        raise UnauthorizedError("Invalid email or password")
    return AuthResult(user=user_summary(user), token=tokens.issue(user.id))


def authenticate(store: HierarchyStore, tokens: TokenService, token: Optional[str]) -> User:
    user_id = tokens.verify(token)
    user = store.get_user(user_id)
    if user is None:
        raise UnauthorizedError("User not found. Token may be invalid.")
    return user


# === Boards ===


def list_boards(store: HierarchyStore, user: User) -> list[BoardOut]:
    return [board_out(b) for b in store.boards_for_user(user)]


def create_board(store: HierarchyStore, user: User, payload: BoardCreate) -> BoardOut:
    with store.atomic():
        board = store.create_board(user, payload.name, payload.description)
    LOGGER.info("board created: %s by %s", board.id, user.id)
    return board_out(board)


def get_board(store: HierarchyStore, user: User, board_id: str) -> BoardDetail:
    board = store.get_board_tree(board_id)
    if board is None:
        raise NotFoundError("Board not found")
    require_member(user.id, board)
    return board_detail(board)


def add_member(
    store: HierarchyStore, user: User, board_id: str, payload: MemberAdd
) -> tuple[BoardOut, Optional[RoomEvent]]:
    with store.atomic():
        board = board_for_id(store, board_id)
        require_member(user.id, board)
        invitee = store.get_user_by_email(str(payload.email).strip().lower())
        if invitee is None:
            raise NotFoundError("User not found")
        added = store.add_member(board, invitee)
    result = board_out(board)
    if not added:
        return result, None
    LOGGER.info("user %s added to board %s by %s", invitee.id, board.id, user.id)
    event = RoomEvent(board.id, "member-added", {"boardId": board.id, "member": user_summary(invitee).model_dump()})
    return result, event


# === Lists ===


def create_list(store: HierarchyStore, user: User, payload: ListCreate) -> tuple[ListOut, RoomEvent]:
    with store.atomic():
        board = board_for_id(store, payload.boardId)
        require_member(user.id, board)
        board_list = store.create_list(board, payload.name)
    LOGGER.info("list created: %s in board %s", board_list.id, board.id)
    result = list_out(board_list)
    event = RoomEvent(board.id, "list-created", {"boardId": board.id, "list": result.model_dump(mode="json")})
    return result, event


# === Tasks ===


def create_task(store: HierarchyStore, user: User, payload: TaskCreate) -> tuple[TaskOut, RoomEvent]:
    with store.atomic():
        board_list, board = board_for_list(store, payload.listId)
        require_member(user.id, board)
        assignees = _resolve_assignees(store, board, payload.assignees)
        task = store.create_task(board_list, payload.title, payload.description, payload.status, assignees)
    LOGGER.info("task created: %s in list %s", task.id, board_list.id)
    event = RoomEvent(board.id, "task-created", {"boardId": board.id, "task": _task_payload(task)})
    return task_out(task), event


def update_task(
    store: HierarchyStore, user: User, task_id: str, payload: TaskUpdate
) -> tuple[TaskOut, RoomEvent]:
    with store.atomic():
        task, board_list, board = board_for_task(store, task_id)
        require_member(user.id, board)
        source_list_id = board_list.id
        moved = False

        if payload.listId is not None and payload.listId != source_list_id:
            target = store.get_list(payload.listId)
            if target is None:
                raise NotFoundError("Target list not found")
            if target.board_id != board.id:
                raise ValidationError("Tasks can only be moved between lists of the same board")
            store.reparent(task, target, payload.position)
            moved = True
        elif payload.position is not None and payload.position != task.position:
            store.reorder(task, payload.position)
            moved = True

        if payload.title is not None:
            task.title = payload.title
        if payload.description is not None:
            task.description = payload.description
        if payload.status is not None:
            task.status = payload.status
        if payload.assignees is not None:
            task.assignees = _resolve_assignees(store, board, payload.assignees)
        task.updated_at = now_utc()
    LOGGER.info("task updated: %s", task.id)

    if moved:
        event = RoomEvent(
            board.id,
            "task-moved",
            {
                "boardId": board.id,
                "taskId": task.id,
                "sourceListId": source_list_id,
                "targetListId": task.list_id,
                "task": _task_payload(task),
            },
        )
    else:
        event = RoomEvent(board.id, "task-updated", {"boardId": board.id, "task": _task_payload(task)})
    return task_out(task), event


def delete_task(store: HierarchyStore, user: User, task_id: str) -> RoomEvent:
    with store.atomic():
        task, _, board = board_for_task(store, task_id)
        require_member(user.id, board)
        list_id = store.delete_task(task)
    LOGGER.info("task deleted: %s from list %s", task_id, list_id)
    return RoomEvent(board.id, "task-deleted", {"boardId": board.id, "taskId": task_id, "listId": list_id})
