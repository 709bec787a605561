from fastapi import APIRouter, Depends, Header, Query, Request

from aidispatch.core.exceptions import BadRequestError
from aidispatch.deps import get_current_user, get_ledger
from aidispatch.ledger.entries import TRANSACTION_TYPES
from aidispatch.models.user import User
from aidispatch.services import packages as packages_service
from aidispatch.services import purchases as purchases_service
from aidispatch.services.ledger import CreditLedger

router = APIRouter()


@router.get("/balance")
async def credits_balance(
    user: User = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger),
):
    """Return current credit balance."""
    balance = await ledger.get_balance(str(user.id))
    return {"balance": str(balance)}


@router.get("/status")
async def credits_status(
    user: User = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger),
):
    """Balance, totals, recent transactions, provider breakdown and a package recommendation."""
    user_id = str(user.id)
    status = await ledger.status(user_id)
    monthly_usage = await ledger.monthly_usage_count(user_id)
    status["monthly_usage"] = monthly_usage
    status["recommended_package"] = packages_service.recommended_package(monthly_usage).slug
    return status


@router.get("/transactions")
async def credits_transactions(
    user: User = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    type: str | None = Query(None),
):
    """Return ledger rows for current user (newest first)."""
    types = None
    if type:
        if type not in TRANSACTION_TYPES:
            raise BadRequestError(f"Invalid transaction type: {type}")
        types = (type,)
    entries = await ledger.history(str(user.id), limit=limit, offset=offset, types=types)
    return {"transactions": [e.to_public() for e in entries], "limit": limit, "offset": offset}


@router.get("/packages")
async def credit_packages():
    best = packages_service.best_value_slug()
    return {"packages": [p.to_public(best_value=p.slug == best) for p in packages_service.list_packages()]}


@router.post("/purchases/webhook")
async def purchase_webhook(
    request: Request,
    x_signature: str = Header("", alias="X-Signature"),
    ledger: CreditLedger = Depends(get_ledger),
):
    """Signed purchase event from payment capture -> credit the ledger (idempotent)."""
    body = await request.body()
    entry = await purchases_service.handle_webhook(body, x_signature, ledger=ledger)
    return {"status": "ok", "transaction_id": entry.id if entry else None}
