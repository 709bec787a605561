"""Purchase events from payment capture: verify signature, credit once per payment reference."""

from decimal import Decimal

from pydantic import BaseModel, Field, ValidationError, model_validator

from aidispatch.core.config import get_settings
from aidispatch.core.exceptions import BadRequestError
from aidispatch.core.logging import get_logger
from aidispatch.core.security import verify_webhook_signature
from aidispatch.ledger.entries import LedgerEntry
from aidispatch.services.ledger import CreditLedger, get_credit_ledger
from aidispatch.services.packages import get_package

log = get_logger(__name__)

SUCCEEDED_EVENTS = ("payment.succeeded", "payment.captured")


class PurchaseEvent(BaseModel):
    event: str = "payment.succeeded"
    user_id: str
    payment_reference: str = Field(min_length=1)
    package: str | None = None
    credits: Decimal | None = Field(default=None, gt=0)
    price: Decimal | None = Field(default=None, ge=0)
    currency: str = "usd"
    payment_method: str = "card"

    @model_validator(mode="after")
    def _package_or_credits(self) -> "PurchaseEvent":
        if not self.package and self.credits is None:
            raise ValueError("Either package or credits is required")
        return self


async def apply_purchase_event(event: PurchaseEvent, ledger: CreditLedger | None = None) -> LedgerEntry | None:
    """Write the purchase row. Replays of the same payment_reference return the original row."""
    if event.event not in SUCCEEDED_EVENTS:
        log.info("purchase_event_ignored", event_type=event.event, payment_reference=event.payment_reference)
        return None
    ledger = ledger or get_credit_ledger()

    metadata: dict = {"currency": event.currency}
    if event.package:
        package = get_package(event.package)
        if package is None:
            raise BadRequestError(f"Unknown credit package: {event.package}")
        credits = package.total_credits
        price = event.price if event.price is not None else package.price
        metadata.update({"package": package.slug, "bonus_credits": str(package.bonus_credits)})
        description = f"Purchased {package.name}"
    else:
        credits = event.credits
        price = event.price
        description = f"Purchased {credits} credits"
    if price is not None:
        metadata["price"] = str(price)

    entry = await ledger.credit(
        event.user_id,
        credits,
        "purchase",
        description=description,
        metadata=metadata,
        idempotency_key=f"purchase:{event.payment_reference}",
        payment_reference=event.payment_reference,
        payment_method=event.payment_method,
        payment_status="completed",
    )
    log.info(
        "purchase_applied",
        user_id=event.user_id,
        payment_reference=event.payment_reference,
        transaction_id=entry.id,
        credits=str(entry.amount),
    )
    return entry


async def handle_webhook(payload: bytes, signature: str, ledger: CreditLedger | None = None) -> LedgerEntry | None:
    """Verify HMAC and apply the purchase idempotently."""
    settings = get_settings()
    if not settings.webhook_secret:
        raise BadRequestError("Webhook secret not configured")
    if not signature or not verify_webhook_signature(payload, signature, settings.webhook_secret):
        raise BadRequestError("Invalid webhook signature")
    try:
        event = PurchaseEvent.model_validate_json(payload)
    except ValidationError as e:
        raise BadRequestError("Invalid purchase event", details={"errors": e.errors(include_url=False, include_context=False)}) from e
    return await apply_purchase_event(event, ledger=ledger)
