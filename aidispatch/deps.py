"""Shared FastAPI dependencies."""

from fastapi import Request

from aidispatch.core.exceptions import UnauthorizedError
from aidispatch.core.security import load_session_cookie
from aidispatch.models.user import User
from aidispatch.services.dispatcher import ProviderDispatcher, get_dispatcher
from aidispatch.services.ledger import CreditLedger, get_credit_ledger

SESSION_COOKIE_NAME = "aidispatch_session"


async def get_current_user(request: Request) -> User:
    """Dependency: load session from cookie and return User."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        raise UnauthorizedError("Not authenticated")
    payload = load_session_cookie(cookie)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    user_id = payload.get("user_id")
    if not user_id:
        raise UnauthorizedError("Invalid session")
    user = await User.get(user_id)
    if not user:
        raise UnauthorizedError("User not found")
    if payload.get("session_version") != user.session_version:
        raise UnauthorizedError("Session invalidated")
    return user


def get_ledger() -> CreditLedger:
    return get_credit_ledger()


def get_provider_dispatcher() -> ProviderDispatcher:
    return get_dispatcher()
