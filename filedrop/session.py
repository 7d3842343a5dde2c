"""Session cookies and the request filter that gates every route."""

import logging
from urllib.parse import urlencode

from fastapi import Response
from starlette.requests import HTTPConnection
from starlette.responses import RedirectResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from filedrop.errors import Forbidden, Unauthenticated
from filedrop.models import PublicUser, SessionPayload
from filedrop.signing import TokenCodec

logger = logging.getLogger(__name__)

PUBLIC_PATHS = ("/login", "/api/auth/login", "/api/auth/logout", "/health")
ADMIN_PATHS = ("/admin",)
LOGIN_PATH = "/login"


def _matches(path: str, prefixes: tuple[str, ...]) -> bool:
    return any(path == prefix or path.startswith(prefix + "/") for prefix in prefixes)


class SessionGuard:
    def __init__(self, codec: TokenCodec, *, cookie_name: str, ttl_seconds: int, secure: bool = False):
        self.codec = codec
        self.cookie_name = cookie_name
        self.ttl_seconds = ttl_seconds
        self.secure = secure

    def issue(self, user: PublicUser) -> str:
        now = int(self.codec.now())
        payload = SessionPayload(
            username=user.username,
            role=user.role,
            issued_at=now,
            expires_at=now + self.ttl_seconds,
        )
        return self.codec.sign(payload)

    def get_session(self, conn: HTTPConnection) -> SessionPayload | None:
        token = conn.cookies.get(self.cookie_name)
        if not token:
            return None
        return self.codec.verify(token)

    def require_session(self, conn: HTTPConnection) -> SessionPayload:
        session = self.get_session(conn)
        if session is None:
            raise Unauthenticated()
        return session

    def require_admin(self, conn: HTTPConnection) -> SessionPayload:
        session = self.require_session(conn)
        if session.role != "admin":
            raise Forbidden()
        return session

    def set_cookie(self, response: Response, token: str) -> None:
        response.set_cookie(
            key=self.cookie_name,
            value=token,
            max_age=self.ttl_seconds,
            path="/",
            secure=self.secure,
            httponly=True,
            samesite="lax",
        )

    def clear_cookie(self, response: Response) -> None:
        response.set_cookie(
            key=self.cookie_name,
            value="",
            max_age=0,
            path="/",
            secure=self.secure,
            httponly=True,
            samesite="lax",
        )


class SessionFilterMiddleware:
    """Runs before routing so no handler sees an unauthenticated request.

    Requests without a valid session go to ``/login?redirect=<path>``;
    non-admin sessions asking for an admin page go to ``/``.
    """

    def __init__(self, app: ASGIApp, guard: SessionGuard):
        self.app = app
        self.guard = guard

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or _matches(scope["path"], PUBLIC_PATHS):
            await self.app(scope, receive, send)
            return

        path = scope["path"]
        session = self.guard.get_session(HTTPConnection(scope))
        if session is None:
            logger.debug("No session for %s; redirecting to login", path)
            response = RedirectResponse(f"{LOGIN_PATH}?{urlencode({'redirect': path})}")
        elif _matches(path, ADMIN_PATHS) and session.role != "admin":
            response = RedirectResponse("/")
        else:
            await self.app(scope, receive, send)
            return
        await response(scope, receive, send)
