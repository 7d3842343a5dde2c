import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import ClientDisconnect

from filedrop.config import Settings, get_settings
from filedrop.context import AppContext, build_context
from filedrop.deps import AdminSession, Context, CurrentSession
from filedrop.errors import BadRequest, NotFound, ServiceError, Unauthenticated
from filedrop.logging_setup import configure_logging
from filedrop.models import (
    AccountResponse,
    CreateUserRequest,
    DeleteUserResponse,
    EventListResponse,
    FileDeleteResponse,
    FileListResponse,
    LoginRequest,
    UploadResponse,
    UserListResponse,
)
from filedrop.session import SessionFilterMiddleware

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, context: AppContext | None = None) -> FastAPI:
    settings = settings or get_settings()
    context = context or build_context(settings)
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await context.startup()
        logger.info("%s started (env=%s, node=%s)", settings.app_name, settings.app_env, settings.node_id)
        yield
        await context.shutdown()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.context = context
    app.add_middleware(SessionFilterMiddleware, guard=context.guard)

    def error_response(status_code: int, message: str, code: str) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content={"error": {"code": code, "message": message}},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
        missing_fields = [
            ".".join(str(item) for item in error["loc"] if item != "body")
            for error in exc.errors()
            if error.get("type") == "missing"
        ]
        if missing_fields:
            message = f"missing parameters: {', '.join(missing_fields)}"
        else:
            message = "invalid request parameters"
        return error_response(400, message, "bad_request")

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_: Request, exc: StarletteHTTPException):
        message = str(exc.detail) if exc.detail else "request failed"
        code_map = {
            400: "bad_request",
            401: "unauthorized",
            403: "forbidden",
            404: "not_found",
            405: "method_not_allowed",
            413: "payload_too_large",
        }
        return error_response(exc.status_code, message, code_map.get(exc.status_code, "error"))

    @app.exception_handler(ServiceError)
    async def service_exception_handler(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return error_response(exc.status_code, exc.message, exc.code)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "environment": settings.app_env}

    @app.get("/login")
    def login_page(redirect: str = Query("/")) -> dict:
        return {"login": "/api/auth/login", "redirect": redirect}

    @app.get("/")
    async def home(session: CurrentSession, ctx: Context) -> dict:
        quota = await ctx.ledger.get(session.username)
        return {
            "service": settings.app_name,
            "viewer": session.username,
            "role": session.role,
            "quota": quota.model_dump(),
        }

    @app.get("/admin", response_model=UserListResponse)
    async def admin_page(_: AdminSession, ctx: Context):
        accounts = await ctx.accounts.list_accounts()
        return UserListResponse(users=[AccountResponse(user=user, quota=quota) for user, quota in accounts])

    @app.post("/api/auth/login", response_model=AccountResponse)
    async def login(payload: LoginRequest, response: Response, ctx: Context):
        username = payload.username.strip()
        if not username:
            raise BadRequest("Username and password are required")
        user = await ctx.users.authenticate(username, payload.password)
        ctx.guard.set_cookie(response, ctx.guard.issue(user))
        logger.info("User %s logged in", user.username)
        return AccountResponse(user=user, quota=await ctx.ledger.get(user.username))

    @app.post("/api/auth/logout")
    def logout(response: Response, ctx: Context) -> dict:
        ctx.guard.clear_cookie(response)
        return {"ok": True}

    @app.get("/api/auth/me", response_model=AccountResponse)
    async def me(session: CurrentSession, ctx: Context):
        user = await ctx.users.get_user(session.username)
        if not user:
            raise Unauthenticated()
        return AccountResponse(user=user, quota=await ctx.ledger.get(user.username))

    @app.get("/api/files", response_model=FileListResponse)
    async def list_files(session: CurrentSession, ctx: Context):
        return FileListResponse(files=await ctx.records.list_files(), viewer=session.username)

    @app.post("/api/files", response_model=UploadResponse, status_code=201)
    async def upload_file(request: Request, session: CurrentSession, ctx: Context):
        if not await ctx.users.get_user(session.username):
            raise Unauthenticated()
        content_type = request.headers.get("content-type", "")
        if "multipart/form-data" not in content_type:
            raise BadRequest("Invalid content type")

        try:
            record, quota = await ctx.uploads.upload(session.username, request.stream(), content_type)
        except ClientDisconnect as exc:
            logger.info("Client disconnected during upload by %s", session.username)
            raise BadRequest("Client disconnected during upload") from exc
        return UploadResponse(record=record, quota=quota)

    @app.get("/api/files/{cid}")
    async def download_file(cid: str, _: CurrentSession, ctx: Context):
        record = await ctx.records.get_file_record(cid)
        if not record:
            raise NotFound("File not found")
        chunks = await ctx.blobs.get(cid)
        return StreamingResponse(
            chunks,
            media_type=record.mime,
            headers={"cache-control": "private, max-age=0"},
        )

    @app.delete("/api/files/{cid}", response_model=FileDeleteResponse)
    async def delete_file(cid: str, session: CurrentSession, ctx: Context):
        return FileDeleteResponse(quota=await ctx.uploads.delete(session, cid))

    @app.get("/api/events", response_model=EventListResponse)
    async def list_events(_: CurrentSession, ctx: Context):
        return EventListResponse(events=await ctx.records.list_events(settings.events_limit))

    @app.get("/api/users", response_model=UserListResponse)
    async def list_users(_: AdminSession, ctx: Context):
        accounts = await ctx.accounts.list_accounts()
        return UserListResponse(users=[AccountResponse(user=user, quota=quota) for user, quota in accounts])

    @app.post("/api/users", response_model=AccountResponse, status_code=201)
    async def create_user(payload: CreateUserRequest, _: AdminSession, ctx: Context):
        user, quota = await ctx.accounts.create_account(payload.username, payload.password, payload.max_images)
        return AccountResponse(user=user, quota=quota)

    @app.delete("/api/users/{username}", response_model=DeleteUserResponse)
    async def delete_user(username: str, _: AdminSession, ctx: Context):
        return DeleteUserResponse(removed=await ctx.accounts.delete_account(username))

    return app


app = create_app()
