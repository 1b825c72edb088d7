from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Header, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__, commands
from .auth import TokenService
from .commands import RoomEvent
from .config import Settings
from .db import User, create_engine_for, init_db, make_session_factory
from .errors import AppError
from .realtime import SessionManager
from .rooms import RoomBroadcaster
from .schemas import BoardCreate, ListCreate, LoginRequest, MemberAdd, RegisterRequest, TaskCreate, TaskUpdate
from .storage import HierarchyStore

bearer_scheme = HTTPBearer(auto_error=False)


# === Helpers ===


def ok(data: Any = None, message: Optional[str] = None) -> dict:
    body: dict = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body


async def publish_event(broadcaster: RoomBroadcaster, event: RoomEvent, exclude: Optional[str]) -> None:
    await broadcaster.publish(event.board_id, event.name, event.data, exclude=exclude)


# === Dependencies ===


def get_store(request: Request) -> Iterator[HierarchyStore]:
    with request.app.state.session_factory() as session:
        yield HierarchyStore(session)


def get_tokens(request: Request) -> TokenService:
    return request.app.state.tokens


def get_broadcaster(request: Request) -> RoomBroadcaster:
    return request.app.state.broadcaster


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    store: HierarchyStore = Depends(get_store),
    tokens: TokenService = Depends(get_tokens),
) -> User:
    token = credentials.credentials if credentials else None
    return commands.authenticate(store, tokens, token)


# === Error handlers ===


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    body: dict = {"success": False, "message": exc.message}
    if exc.status_code >= 500:
        body["message"] = "Internal server error"
        if request.app.state.settings.debug:
            body["error"] = exc.message
    return JSONResponse(status_code=exc.status_code, content=body)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        loc = [str(part) for part in first.get("loc", ()) if part != "body"]
        message = f"{'.'.join(loc)}: {first.get('msg')}" if loc else str(first.get("msg"))
    return JSONResponse(status_code=400, content={"success": False, "message": message})


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = "Route not found" if exc.status_code == 404 else str(exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": message})


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    # ServerErrorMiddleware re-raises after this response, so the ASGI server logs the traceback
    body: dict = {"success": False, "message": "Internal server error"}
    if request.app.state.settings.debug:
        body["error"] = str(exc)
    return JSONResponse(status_code=500, content=body)


# === Auth endpoints ===

router = APIRouter()


@router.post("/auth/register", status_code=201)
def register(
    payload: RegisterRequest,
    store: HierarchyStore = Depends(get_store),
    tokens: TokenService = Depends(get_tokens),
):
    result = commands.register(store, tokens, payload)
    return ok(result, "User registered successfully")


@router.post("/auth/login")
def login(
    payload: LoginRequest,
    store: HierarchyStore = Depends(get_store),
    tokens: TokenService = Depends(get_tokens),
):
    return ok(commands.login(store, tokens, payload), "Login successful")


@router.get("/auth/me")
def me(user: User = Depends(get_current_user)):
    return ok(commands.user_summary(user))


# === Board endpoints ===


@router.get("/boards")
def list_boards(user: User = Depends(get_current_user), store: HierarchyStore = Depends(get_store)):
    return ok(commands.list_boards(store, user))


@router.post("/boards", status_code=201)
def create_board(
    payload: BoardCreate,
    user: User = Depends(get_current_user),
    store: HierarchyStore = Depends(get_store),
):
    return ok(commands.create_board(store, user, payload), "Board created successfully")


@router.get("/boards/{board_id}")
def get_board(board_id: str, user: User = Depends(get_current_user), store: HierarchyStore = Depends(get_store)):
    return ok(commands.get_board(store, user, board_id))


@router.post("/boards/{board_id}/members")
def add_member(
    board_id: str,
    payload: MemberAdd,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    store: HierarchyStore = Depends(get_store),
    broadcaster: RoomBroadcaster = Depends(get_broadcaster),
    socket_id: Optional[str] = Header(default=None, alias="X-Socket-Id"),
):
    result, event = commands.add_member(store, user, board_id, payload)
    if event is not None:
        background_tasks.add_task(publish_event, broadcaster, event, socket_id)
    return ok(result, "Member added successfully")


# === List endpoints ===


@router.post("/lists", status_code=201)
def create_list(
    payload: ListCreate,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    store: HierarchyStore = Depends(get_store),
    broadcaster: RoomBroadcaster = Depends(get_broadcaster),
    socket_id: Optional[str] = Header(default=None, alias="X-Socket-Id"),
):
    result, event = commands.create_list(store, user, payload)
    background_tasks.add_task(publish_event, broadcaster, event, socket_id)
    return ok(result, "List created successfully")


# === Task endpoints ===


@router.post("/tasks", status_code=201)
def create_task(
    payload: TaskCreate,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    store: HierarchyStore = Depends(get_store),
    broadcaster: RoomBroadcaster = Depends(get_broadcaster),
    socket_id: Optional[str] = Header(default=None, alias="X-Socket-Id"),
):
    result, event = commands.create_task(store, user, payload)
    background_tasks.add_task(publish_event, broadcaster, event, socket_id)
    return ok(result, "Task created successfully")


@router.put("/tasks/{task_id}")
def update_task(
    task_id: str,
    payload: TaskUpdate,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    store: HierarchyStore = Depends(get_store),
    broadcaster: RoomBroadcaster = Depends(get_broadcaster),
    socket_id: Optional[str] = Header(default=None, alias="X-Socket-Id"),
):
    result, event = commands.update_task(store, user, task_id, payload)
    background_tasks.add_task(publish_event, broadcaster, event, socket_id)
    return ok(result, "Task updated successfully")


@router.delete("/tasks/{task_id}")
def delete_task(
    task_id: str,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    store: HierarchyStore = Depends(get_store),
    broadcaster: RoomBroadcaster = Depends(get_broadcaster),
    socket_id: Optional[str] = Header(default=None, alias="X-Socket-Id"),
):
    event = commands.delete_task(store, user, task_id)
    background_tasks.add_task(publish_event, broadcaster, event, socket_id)
    return ok(message="Task deleted successfully")


# === Application ===


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    engine = create_engine_for(settings.database_url)
    init_db(engine)

    app = FastAPI(title="Boardsync API", version=__version__)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = make_session_factory(engine)
    app.state.tokens = TokenService(settings.jwt_secret, settings.jwt_algorithm, settings.token_ttl_seconds)
    app.state.broadcaster = RoomBroadcaster()
    app.state.sessions = SessionManager(
        app.state.session_factory,
        app.state.tokens,
        app.state.broadcaster,
        max_queue=settings.session_queue_size,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    @app.get("/")
    def root() -> dict:
        return {
            "success": True,
            "message": "Kanban Board API",
            "version": __version__,
            "endpoints": {
                "health": "/health",
                "auth": f"{settings.api_prefix}/auth",
                "boards": f"{settings.api_prefix}/boards",
                "lists": f"{settings.api_prefix}/lists",
                "tasks": f"{settings.api_prefix}/tasks",
                "realtime": "/ws",
            },
        }

    @app.get("/health")
    def health() -> dict:
        return {
            "success": True,
            "message": "Server is running",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.websocket("/ws")
    async def realtime(websocket: WebSocket) -> None:
        await app.state.sessions.handle(websocket)

    app.include_router(router, prefix=settings.api_prefix)
    return app
