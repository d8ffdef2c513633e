from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# Schema for signup and login
class Credentials(BaseModel):
    username: str
    password: str


# Schema for the JWT token response
class TokenResponse(BaseModel):
    jwtToken: str


class Message(BaseModel):
    msg: str


class UsernameUpdate(BaseModel):
    newUsername: str


# `pass` is the previous password, `password` the new one
class PasswordUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    password: str
    previous_password: str = Field(alias="pass")


class RenameResponse(Message):
    jwtToken: str


# Task fields are opaque: stored and returned as given, without validation
class TaskBase(BaseModel):
    taskName: Any = None
    description: Any = None
    dueDate: Any = None
    status: Any = None
    priority: Any = None


class TaskUpdate(TaskBase):
    pass


class Task(TaskBase):
    # Numeric ids are accepted and stored as strings so they match path ids
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str

    # Field order matches the stored document
    def to_document(self) -> dict:
        return {
            "id": self.id,
            "taskName": self.taskName,
            "description": self.description,
            "dueDate": self.dueDate,
            "status": self.status,
            "priority": self.priority,
        }


class Profile(BaseModel):
    username: str
    taskList: list[dict] = []
