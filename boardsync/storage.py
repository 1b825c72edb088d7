from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from .db import DEFAULT_LISTS, Board, BoardList, Task, User, now_utc
from .errors import InternalError

LOGGER = logging.getLogger(__name__)


class HierarchyStore:
    """Boards, lists and tasks over a single SQLAlchemy session.

    Parent and child references are kept consistent through the ORM
    relationships; every structural change goes through ``atomic()`` so the
    parent and child halves commit or roll back together.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    @contextmanager
    def atomic(self) -> Iterator[None]:
        try:
            yield
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            LOGGER.exception("transaction rolled back")
            raise InternalError(str(exc)) from exc
        except Exception:
            self.session.rollback()
            raise

    # === User operations ===
    def get_user(self, user_id: str) -> Optional[User]:
        return self.session.get(User, user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self.session.scalars(select(User).where(User.email == email)).first()

    def create_user(self, name: str, email: str, password_hash: str) -> User:
        user = User(name=name, email=email, password_hash=password_hash)
        self.session.add(user)
        self.session.flush()
        return user

    def users_by_ids(self, user_ids: list[str]) -> list[User]:
        if not user_ids:
            return []
        return list(self.session.scalars(select(User).where(User.id.in_(user_ids))))

    # === Board operations ===
    def boards_for_user(self, user: User) -> list[Board]:
        stmt = (
            select(Board)
            .where(Board.members.contains(user))
            .options(selectinload(Board.members), selectinload(Board.lists))
            .order_by(Board.created_at.desc(), Board.id)
        )
        return list(self.session.scalars(stmt))

    def get_board(self, board_id: str) -> Optional[Board]:
        return self.session.get(Board, board_id)

    def get_board_tree(self, board_id: str) -> Optional[Board]:
        stmt = (
            select(Board)
            .where(Board.id == board_id)
            .options(
                selectinload(Board.members),
                selectinload(Board.lists).selectinload(BoardList.tasks).selectinload(Task.assignees),
            )
        )
        return self.session.scalars(stmt).first()

    def create_board(self, owner: User, name: str, description: str) -> Board:
        """Create a board with its creator as member and the default lists."""
        board = Board(name=name, description=description)
        board.members.append(owner)
        for position, list_name in enumerate(DEFAULT_LISTS):
            board.lists.append(BoardList(name=list_name, position=position))
        self.session.add(board)
        self.session.flush()
        return board

    def add_member(self, board: Board, user: User) -> bool:
        if any(member.id == user.id for member in board.members):
            return False
        board.members.append(user)
        board.updated_at = now_utc()
        self.session.flush()
        return True

    # === List operations ===
    def get_list(self, list_id: str) -> Optional[BoardList]:
        return self.session.get(BoardList, list_id)

    def next_list_position(self, board_id: str) -> int:
        stmt = select(func.count()).select_from(BoardList).where(BoardList.board_id == board_id)
        return self.session.scalar(stmt) or 0

    def create_list(self, board: Board, name: str) -> BoardList:
        board_list = BoardList(name=name, position=self.next_list_position(board.id))
        board.lists.append(board_list)
        board.updated_at = now_utc()
        self.session.flush()
        return board_list

    # === Task operations ===
    def get_task(self, task_id: str) -> Optional[Task]:
        return self.session.get(Task, task_id)

    def next_task_position(self, list_id: str) -> int:
        stmt = select(func.count()).select_from(Task).where(Task.list_id == list_id)
        return self.session.scalar(stmt) or 0

    def create_task(
        self,
        board_list: BoardList,
        title: str,
        description: str,
        status: str,
        assignees: list[User],
    ) -> Task:
        task = Task(
            title=title,
            description=description,
            status=status,
            position=self.next_task_position(board_list.id),
            assignees=list(assignees),
        )
        board_list.tasks.append(task)
        board_list.updated_at = now_utc()
        self.session.flush()
        return task

    def reparent(self, task: Task, new_list: BoardList, position: Optional[int] = None) -> Task:
        """Move ``task`` into ``new_list``, updating both child sequences.

        Positions in the source and destination lists are compacted so they
        stay contiguous from zero.
        """
        old_list = task.board_list
        if old_list.id == new_list.id:
            return self.reorder(task, position)
        siblings = [t for t in old_list.tasks if t.id != task.id]
        old_list.tasks = siblings
        _renumber(siblings)
        # re-adopt before flush so the orphan cascade leaves the task alone
        incoming = [t for t in new_list.tasks if t.id != task.id]
        index = len(incoming) if position is None else max(0, min(position, len(incoming)))
        incoming.insert(index, task)
        new_list.tasks = incoming
        _renumber(incoming)
        now = now_utc()
        old_list.updated_at = now
        new_list.updated_at = now
        self.session.flush()
        return task

    def reorder(self, task: Task, position: Optional[int]) -> Task:
        board_list = task.board_list
        if position is None:
            return task
        siblings = [t for t in board_list.tasks if t.id != task.id]
        index = max(0, min(position, len(siblings)))
        siblings.insert(index, task)
        board_list.tasks = siblings
        _renumber(siblings)
        self.session.flush()
        return task

    def delete_task(self, task: Task) -> str:
        """Remove the task from its list's sequence, then drop the record."""
        board_list = task.board_list
        remaining = [t for t in board_list.tasks if t.id != task.id]
        board_list.tasks = remaining
        _renumber(remaining)
        board_list.updated_at = now_utc()
        self.session.delete(task)
        self.session.flush()
        return board_list.id


def _renumber(tasks: list[Task]) -> None:
    for index, task in enumerate(tasks):
        if task.position != index:
            task.position = index
