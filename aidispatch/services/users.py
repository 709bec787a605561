from datetime import datetime, timezone

from aidispatch.core.logging import get_logger
from aidispatch.core.security import create_session_cookie
from aidispatch.models.user import User
from aidispatch.services.ledger import CreditLedger, get_credit_ledger

log = get_logger(__name__)


async def get_or_create_user(email: str, name: str = "", ledger: CreditLedger | None = None) -> User:
    """Find the account for an upstream-authenticated email, creating it (with demo credits) on first sight."""
    email = email.strip().lower()
    user = await User.find_one(User.email == email)
    if user:
        user.last_login_at = datetime.now(timezone.utc)
        user.updated_at = datetime.now(timezone.utc)
        await user.save()
        log.info("user_login", user_id=str(user.id))
    else:
        user = User(email=email, name=name, last_login_at=datetime.now(timezone.utc))
        await user.insert()
        log.info("user_created", user_id=str(user.id))
    if not user.demo_credits_granted:
        await (ledger or get_credit_ledger()).grant_demo_credits(str(user.id))
        user.demo_credits_granted = True
        await user.save()
    return user


def session_cookie_for(user: User) -> str:
    return create_session_cookie({"user_id": str(user.id), "session_version": user.session_version})
