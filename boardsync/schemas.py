from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StringConstraints, field_validator

TaskStatus = Literal["To Do", "In Progress", "Done"]


class StrippedModel(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)


# === Accounts ===


class RegisterRequest(BaseModel):
    name: Annotated[str, StringConstraints(strip_whitespace=True, min_length=2, max_length=50)]
    email: EmailStr
    password: str = Field(min_length=6, max_length=128)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class UserSummary(BaseModel):
    id: str
    name: str
    email: str


class AuthResult(BaseModel):
    user: UserSummary
    token: str


# === Boards ===


class BoardCreate(StrippedModel):
    name: str = Field(min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)

    @field_validator("description", mode="before")
    @classmethod
    def _null_description(cls, value):
        return "" if value is None else value


class MemberAdd(BaseModel):
    email: EmailStr


class ListCreate(StrippedModel):
    name: str = Field(min_length=1, max_length=100)
    boardId: str = Field(min_length=1)


class TaskCreate(StrippedModel):
    title: str = Field(min_length=1, max_length=200)
    listId: str = Field(min_length=1)
    description: str = Field(default="", max_length=2000)
    status: TaskStatus = "To Do"
    assignees: list[str] = Field(default_factory=list)

    @field_validator("description", mode="before")
    @classmethod
    def _null_description(cls, value):
        return "" if value is None else value


class TaskUpdate(StrippedModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    status: Optional[TaskStatus] = None
    assignees: Optional[list[str]] = None
    listId: Optional[str] = Field(default=None, min_length=1)
    position: Optional[int] = Field(default=None, ge=0)


class TaskOut(BaseModel):
    id: str
    listId: str
    title: str
    description: str
    status: str
    position: int
    assignees: list[UserSummary]
    createdAt: datetime
    updatedAt: datetime


class ListOut(BaseModel):
    id: str
    boardId: str
    name: str
    position: int
    taskIds: list[str]
    createdAt: datetime
    updatedAt: datetime


class ListDetail(ListOut):
    tasks: list[TaskOut]


class BoardOut(BaseModel):
    id: str
    name: str
    description: str
    members: list[UserSummary]
    lists: list[ListOut]
    createdAt: datetime
    updatedAt: datetime


class BoardDetail(BaseModel):
    id: str
    name: str
    description: str
    members: list[UserSummary]
    lists: list[ListDetail]
    createdAt: datetime
    updatedAt: datetime
