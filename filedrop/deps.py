"""FastAPI dependencies for the application context and sessions."""

from typing import Annotated

from fastapi import Depends, Request

from filedrop.context import AppContext
from filedrop.models import SessionPayload


def get_context(request: Request) -> AppContext:
    return request.app.state.context


Context = Annotated[AppContext, Depends(get_context)]


def require_session(request: Request, context: Context) -> SessionPayload:
    """Current session, or ``Unauthenticated`` when the cookie is missing, forged or expired."""
    return context.guard.require_session(request)


def require_admin(request: Request, context: Context) -> SessionPayload:
    """Current session if it belongs to an admin; ``Forbidden`` otherwise."""
    return context.guard.require_admin(request)


CurrentSession = Annotated[SessionPayload, Depends(require_session)]
AdminSession = Annotated[SessionPayload, Depends(require_admin)]
