import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.security import OAuth2PasswordBearer
from fastapi.security.utils import get_authorization_scheme_param
from passlib.context import CryptContext
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool
from starlette.routing import Match

from config import Settings, get_settings
from database import DuplicateUsernameError, TaskWriteResult, UserStore
from logging_setup import setup_logging
from schemas import (
    Credentials,
    Message,
    PasswordUpdate,
    Profile,
    RenameResponse,
    Task,
    TaskUpdate,
    TokenResponse,
    UsernameUpdate,
)
from security import (
    InvalidTokenError,
    TokenService,
    hash_password,
    make_password_context,
    verify_password,
)

logger = logging.getLogger(__name__)

INVALID_TOKEN = "Invalid JWT Token"
USER_NOT_FOUND = "cannot find the user"
TASK_USER_NOT_FOUND = "cannot find user"


class APIError(Exception):
    """An error that maps directly onto a JSON response `{key: message}`."""

    def __init__(self, status_code: int, message: str, key: str = "err"):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.key = key


# --- Dependencies ---

# `tokenUrl` points to the endpoint where clients can get a token. A missing
# header is reported by the guard below rather than by FastAPI.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="login", auto_error=False)


def get_store(request: Request) -> UserStore:
    return request.app.state.store


def get_token_service(request: Request) -> TokenService:
    return request.app.state.tokens


def get_pwd_context(request: Request) -> CryptContext:
    return request.app.state.pwd_context


# Auth guard: resolves the bearer token to a username or rejects the request
# with 401 before the handler (and the store) is reached.
def get_current_username(
    token: Annotated[str | None, Depends(oauth2_scheme)],
    tokens: Annotated[TokenService, Depends(get_token_service)],
) -> str:
    if not token:
        raise APIError(status.HTTP_401_UNAUTHORIZED, INVALID_TOKEN)
    try:
        payload = tokens.decode_token(token)
    except InvalidTokenError as e:
        logger.warning("Rejected bearer token: %s", e)
        raise APIError(status.HTTP_401_UNAUTHORIZED, INVALID_TOKEN)
    return payload["username"]


Store = Annotated[UserStore, Depends(get_store)]
Tokens = Annotated[TokenService, Depends(get_token_service)]
PwdContext = Annotated[CryptContext, Depends(get_pwd_context)]
CurrentUsername = Annotated[str, Depends(get_current_username)]


# Signup, login and the health probe; no token needed
router = APIRouter()

# Everything that acts on the caller's own document
user_router = APIRouter()


# --- Public Endpoints ---

# Root endpoint
@router.get("/", response_class=PlainTextResponse)
async def read_root():
    return "hello from fastapi"


@router.get("/health")
async def health():
    return {"status": "ok"}


# Endpoint for user registration
@router.post("/signup", response_model=TokenResponse)
async def signup(body: Credentials, store: Store, tokens: Tokens, pwd_context: PwdContext):
    if await store.get_user(body.username):
        raise APIError(status.HTTP_400_BAD_REQUEST, "username already exists", key="msg")

    # bcrypt is CPU bound, keep it off the event loop
    try:
        hashed_password = await run_in_threadpool(hash_password, pwd_context, body.password)
    except ValueError:
        raise APIError(status.HTTP_400_BAD_REQUEST, "Invalid password")
    try:
        await store.create_user(body.username, hashed_password)
    except DuplicateUsernameError:
        # Lost the race against a concurrent signup; the unique index caught it
        raise APIError(status.HTTP_400_BAD_REQUEST, "username already exists", key="msg")

    logger.info("Signed up user %s", body.username)
    return {"jwtToken": tokens.create_token(body.username)}


# Endpoint for user login to get a token
@router.post("/login", response_model=TokenResponse)
async def login(body: Credentials, store: Store, tokens: Tokens, pwd_context: PwdContext):
    user = await store.get_user(body.username)
    if not user:
        raise APIError(status.HTTP_400_BAD_REQUEST, "User does not exist")

    matched = await run_in_threadpool(verify_password, pwd_context, body.password, user["password"])
    if not matched:
        logger.info("Failed login for user %s", body.username)
        raise APIError(status.HTTP_400_BAD_REQUEST, "Incorrect Password")

    logger.info("User %s logged in", body.username)
    return {"jwtToken": tokens.create_token(body.username)}


# --- Profile Endpoints ---

@user_router.get("/profile", response_model=Profile)
async def read_profile(username: CurrentUsername, store: Store):
    user = await store.get_user(username)
    if not user:
        raise APIError(status.HTTP_400_BAD_REQUEST, USER_NOT_FOUND)
    # The password hash and internal _id never leave the server
    return {"username": user["username"], "taskList": user.get("taskList") or []}


@user_router.put("/editprofile/username", response_model=RenameResponse)
async def edit_username(body: UsernameUpdate, username: CurrentUsername, store: Store, tokens: Tokens):
    user = await store.get_user(username)
    taken = await store.get_user(body.newUsername)
    if not user:
        raise APIError(status.HTTP_400_BAD_REQUEST, USER_NOT_FOUND)
    if taken:
        raise APIError(status.HTTP_401_UNAUTHORIZED, "username already exists")

    try:
        renamed = await store.rename_user(username, body.newUsername)
    except DuplicateUsernameError:
        raise APIError(status.HTTP_401_UNAUTHORIZED, "username already exists")
    if not renamed:
        raise APIError(status.HTTP_400_BAD_REQUEST, USER_NOT_FOUND)

    logger.info("Renamed user %s to %s", username, body.newUsername)
    # The old token names a user that no longer exists, so hand out a new one
    return {"msg": "successfully updated", "jwtToken": tokens.create_token(body.newUsername)}


@user_router.put("/editprofile/password", response_model=Message)
async def edit_password(body: PasswordUpdate, username: CurrentUsername, store: Store, pwd_context: PwdContext):
    user = await store.get_user(username)
    if not user:
        raise APIError(status.HTTP_400_BAD_REQUEST, USER_NOT_FOUND)

    matched = await run_in_threadpool(verify_password, pwd_context, body.previous_password, user["password"])
    if not matched:
        raise APIError(status.HTTP_400_BAD_REQUEST, "Incorrect previous password", key="msg")

    try:
        hashed_password = await run_in_threadpool(hash_password, pwd_context, body.password)
    except ValueError:
        raise APIError(status.HTTP_400_BAD_REQUEST, "Invalid password")
    if not await store.set_password(username, hashed_password):
        raise APIError(status.HTTP_400_BAD_REQUEST, USER_NOT_FOUND)
    logger.info("Changed password for user %s", username)
    return {"msg": "Password changed successfully"}


# --- Task Endpoints ---
# All task endpoints operate on the caller's own task list.

@user_router.get("/tasks", response_model=list[dict])
async def read_tasks(username: CurrentUsername, store: Store):
    tasks = await store.list_tasks(username)
    if tasks is None:
        raise APIError(status.HTTP_400_BAD_REQUEST, TASK_USER_NOT_FOUND)
    return tasks


@user_router.post("/tasks", response_model=Message)
async def create_task(task: Task, username: CurrentUsername, store: Store):
    result = await store.add_task(username, task.to_document())
    if result is TaskWriteResult.USER_NOT_FOUND:
        raise APIError(status.HTTP_400_BAD_REQUEST, TASK_USER_NOT_FOUND)
    if result is TaskWriteResult.DUPLICATE_TASK:
        raise APIError(status.HTTP_400_BAD_REQUEST, "task id already exists")
    return {"msg": "successfully added"}


@user_router.put("/tasks/{task_id}", response_model=Message)
async def update_task(task_id: str, body: TaskUpdate, username: CurrentUsername, store: Store):
    task = Task(id=task_id, **body.model_dump())
    if not await store.replace_task(username, task_id, task.to_document()):
        raise APIError(status.HTTP_400_BAD_REQUEST, TASK_USER_NOT_FOUND)
    return {"msg": "Status successfully updated"}


@user_router.delete("/tasks/{task_id}", response_model=Message)
async def delete_task(task_id: str, username: CurrentUsername, store: Store):
    if not await store.delete_task(username, task_id):
        raise APIError(status.HTTP_400_BAD_REQUEST, TASK_USER_NOT_FOUND)
    return {"msg": "successfully deleted"}


# --- Error handlers ---

# FastAPI parses the body before running dependencies, so a request to a
# protected route can fail validation before the auth guard ever runs.
def _lacks_valid_token(request: Request) -> bool:
    if not any(route.matches(request.scope)[0] is Match.FULL for route in user_router.routes):
        return False
    scheme, token = get_authorization_scheme_param(request.headers.get("Authorization"))
    if scheme.lower() != "bearer" or not token:
        return True
    try:
        request.app.state.tokens.decode_token(token)
    except InvalidTokenError:
        return True
    return False


async def api_error_handler(request: Request, exc: APIError):
    return JSONResponse(status_code=exc.status_code, content={exc.key: exc.message})


# Missing or malformed body fields are client errors, not 422s
async def validation_error_handler(request: Request, exc: RequestValidationError):
    if _lacks_valid_token(request):
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"err": INVALID_TOKEN})

    errors = exc.errors()
    if errors:
        first = errors[0]
        # Skip "body" and positional parts such as the offset of a JSON decode error
        field = ".".join(
            str(part) for part in first.get("loc", ()) if part != "body" and not isinstance(part, int)
        )
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    else:
        message = "Invalid request"
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"err": message})


# Store failures are logged in full but never echoed back to the client
async def store_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"err": "Internal Server Error"},
    )


def create_app(settings: Settings | None = None, store: UserStore | None = None) -> FastAPI:
    """
    Build the application.

    Without a `store`, startup connects to MongoDB using `settings` and the
    connection is closed on shutdown. A supplied store is used as is.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if getattr(app.state, "store", None) is None:
            owned = UserStore.connect(settings.mongodb_uri, settings.mongodb_db)
            await owned.ping()
            await owned.ensure_indexes()
            app.state.store = owned
        yield
        if owned is not None:
            owned.close()
            app.state.store = None

    app = FastAPI(title="task-manager", lifespan=lifespan)
    app.state.store = store
    app.state.tokens = TokenService(
        settings.jwt_secret,
        previous_secrets=settings.jwt_previous_secrets,
        algorithm=settings.jwt_algorithm,
        expire_minutes=settings.access_token_expire_minutes,
    )
    app.state.pwd_context = make_password_context(settings.bcrypt_rounds)

    # Configure CORS (Cross-Origin Resource Sharing) so a browser frontend can call the API
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(PyMongoError, store_error_handler)
    app.add_exception_handler(Exception, store_error_handler)

    app.include_router(router)
    app.include_router(user_router)
    return app


# Entry point for `uvicorn main:app_factory --factory`
def app_factory() -> FastAPI:
    settings = get_settings()
    setup_logging(settings.log_level)
    return create_app(settings)


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    setup_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)
