from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from branchlms.core.errors import PaymentRequiredError
from branchlms.core.rate_limit import rate_limit
from branchlms.db.session import get_db
from branchlms.db.transaction import run_atomic
from branchlms.services.payments import PurchaseService

router = APIRouter(prefix="/payments", tags=["payments"])


class VerifyPaymentRequest(BaseModel):
    checkout_session_id: str = Field(min_length=1, max_length=200)


@router.post("/verify")
def verify_payment(
    body: VerifyPaymentRequest,
    db: Session = Depends(get_db),
    _: object = rate_limit(key_prefix="payment_verify", limit=20, window_seconds=60),
):
    svc = PurchaseService(db)
    result = run_atomic(db, lambda: svc.verify(body.checkout_session_id))
    if not result["paid"]:
        raise PaymentRequiredError(
            "payment was not successful or is still pending",
            details={"transaction_status": result.get("transaction_status")},
        )
    return result
