import enum
import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError

logger = logging.getLogger(__name__)

USERS_COLLECTION = "users"


class DuplicateUsernameError(Exception):
    """Raised when a write would give two users the same username."""


class TaskWriteResult(enum.Enum):
    OK = "ok"
    USER_NOT_FOUND = "user_not_found"
    DUPLICATE_TASK = "duplicate_task"


class UserStore:
    """
    Data access for the `users` collection.

    Each user document looks like::

        {"username": "al", "password": "<bcrypt hash>", "taskList": [...]}

    Tasks live inside the owning user's document. Every task mutation is a
    single update on that document, so concurrent writes for the same user
    can't overwrite each other's changes.
    """

    def __init__(self, collection: AsyncIOMotorCollection, client: AsyncIOMotorClient | None = None):
        self.collection = collection
        self.client = client

    @classmethod
    def connect(cls, uri: str, db_name: str) -> "UserStore":
        client = AsyncIOMotorClient(uri)
        return cls(client[db_name][USERS_COLLECTION], client=client)

    async def ping(self) -> None:
        if self.client is not None:
            await self.client.admin.command("ping")
            logger.info("Pinged MongoDB deployment, connection is up")

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("username", ASCENDING)], unique=True)
        logger.info("Ensured unique index on %s.username", self.collection.name)

    def close(self) -> None:
        # Motor client's close() is not async
        if self.client is not None:
            self.client.close()

    # --- Users ---

    async def get_user(self, username: str) -> dict | None:
        return await self.collection.find_one({"username": username})

    async def create_user(self, username: str, password_hash: str) -> None:
        try:
            await self.collection.insert_one(
                {"username": username, "password": password_hash, "taskList": []}
            )
        except DuplicateKeyError as e:
            raise DuplicateUsernameError(username) from e

    async def rename_user(self, username: str, new_username: str) -> bool:
        try:
            result = await self.collection.update_one(
                {"username": username}, {"$set": {"username": new_username}}
            )
        except DuplicateKeyError as e:
            raise DuplicateUsernameError(new_username) from e
        return result.matched_count == 1

    async def set_password(self, username: str, password_hash: str) -> bool:
        result = await self.collection.update_one(
            {"username": username}, {"$set": {"password": password_hash}}
        )
        return result.matched_count == 1

    # --- Tasks ---

    async def list_tasks(self, username: str) -> list[dict] | None:
        user = await self.collection.find_one({"username": username}, {"taskList": 1})
        if user is None:
            return None
        return user.get("taskList") or []

    async def add_task(self, username: str, task: dict) -> TaskWriteResult:
        # Only matches when no task with this id is present yet
        result = await self.collection.update_one(
            {"username": username, "taskList.id": {"$ne": task["id"]}},
            {"$push": {"taskList": task}},
        )
        if result.matched_count == 1:
            return TaskWriteResult.OK
        if await self.collection.count_documents({"username": username}, limit=1):
            return TaskWriteResult.DUPLICATE_TASK
        return TaskWriteResult.USER_NOT_FOUND

    async def replace_task(self, username: str, task_id: str, task: dict) -> bool:
        """
        Drop every task with `task_id` and append `task`, in one update.

        A missing id simply appends the task.
        """
        remaining = {
            "$filter": {
                "input": {"$ifNull": ["$taskList", []]},
                "cond": {"$ne": ["$$this.id", task_id]},
            }
        }
        # $literal keeps user-supplied values from being read as expressions
        pipeline = [{"$set": {"taskList": {"$concatArrays": [remaining, [{"$literal": task}]]}}}]
        result = await self.collection.update_one({"username": username}, pipeline)
        return result.matched_count == 1

    async def delete_task(self, username: str, task_id: str) -> bool:
        result = await self.collection.update_one(
            {"username": username}, {"$pull": {"taskList": {"id": task_id}}}
        )
        return result.matched_count == 1
