"""
Payment Recovery Handler

Client-side recovery surface for payments whose verification page was left:
- POST /payment/{id}/abandon  log that verification was abandoned
- POST /payment/{id}/recover  run one synchronous verification
- GET  /payment/verify/{id}   current status, verifying pending payments

Responses carry the payment status and its last note, never exception text.
"""

import logging
from typing import Any, Dict, Optional

import orjson
from fastapi import APIRouter, HTTPException, Request

from database import managed_session
from models import Payment, utcnow
from services.gateway_client import GatewayError
from services.payment_verification_service import VerificationOutcome, payment_verification_service

logger = logging.getLogger(__name__)

# Create FastAPI router
router = APIRouter()

DEFAULT_ABANDON_REASON = "page_closed"


def _payment_view(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "status": payment.status,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "gateway": payment.payment_gateway,
        "attempts": payment.attempts or 0,
        "last_note": payment.last_note(),
        "confirmed_at": payment.confirmed_at.isoformat() if payment.confirmed_at else None,
    }


async def _parse_body(request: Request) -> Dict[str, Any]:
    body = await request.body()
    if not body:
        return {}
    try:
        data = orjson.loads(body)
    except orjson.JSONDecodeError as e:
        logger.error(f"❌ RECOVERY_JSON: Invalid JSON format: {e}")
        raise HTTPException(status_code=400, detail="Invalid JSON format")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Invalid request body")
    return data


@router.post("/payment/{payment_id}/abandon")
async def abandon_payment(payment_id: int, request: Request):
    """Record that the customer left the verification page"""
    try:
        data = await _parse_body(request)
        reason = str(data.get("reason") or DEFAULT_ABANDON_REASON)
        attempts = data.get("attempts", 0)

        with managed_session() as session:
            payment = session.get(Payment, payment_id)
            if payment is None:
                raise HTTPException(status_code=404, detail="Payment not found")

            response = dict(payment.gateway_response or {})
            response["abandonment"] = {
                "abandoned_at": utcnow().isoformat(),
                "reason": reason,
                "attempts": attempts,
                "user_agent": request.headers.get("user-agent"),
                "ip": request.client.host if request.client else None,
            }
            payment.gateway_response = response
            payment.append_note(f"Verification abandoned: {reason}")
            if payment.is_pending:
                payment.append_note("Marked for recovery check")

        logger.info(f"🚪 PAYMENT_ABANDONED: Payment {payment_id} reason={reason} attempts={attempts}")
        return {"status": "acknowledged", "message": "Abandonment logged"}

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ PAYMENT_ABANDON: Unexpected error for payment {payment_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


async def _verify_now(payment_id: int, not_pending_message: Optional[str]) -> Dict[str, Any]:
    with managed_session() as session:
        payment = session.get(Payment, payment_id)
        if payment is None:
            raise HTTPException(status_code=404, detail="Payment not found")

        if not payment.is_pending:
            return {
                "status": payment.status,
                "message": not_pending_message or f"Payment is {payment.status}",
                "payment": _payment_view(payment),
            }

        try:
            result = await payment_verification_service.verify(session, payment_id, failure_prefix="Recovery failed")
        except GatewayError as e:
            logger.warning(f"⚠️ PAYMENT_RECOVERY_GATEWAY_ERROR: Payment {payment_id}: {e}")
            payment = session.get(Payment, payment_id)
            return {
                "status": "pending",
                "message": "Payment gateway unavailable, please try again later",
                "payment": _payment_view(payment),
            }

        payment = session.get(Payment, payment_id)
        if result.outcome == VerificationOutcome.COMPLETED:
            status, message = "success", "Payment verified and completed"
        elif result.outcome in (VerificationOutcome.FAILED, VerificationOutcome.EXPIRED):
            status, message = "failed", "Payment verification failed"
        elif result.outcome == VerificationOutcome.RESCHEDULE:
            status, message = "pending", "Payment is still being processed"
        else:
            status, message = payment.status, f"Payment is {payment.status}"

        logger.info(f"🩹 PAYMENT_RECOVERY: Payment {payment_id} -> {result.outcome.value}")
        return {"status": status, "message": message, "payment": _payment_view(payment)}


@router.post("/payment/{payment_id}/recover")
async def recover_payment(payment_id: int):
    """Run one verification for a pending payment"""
    try:
        return await _verify_now(payment_id, "Payment is not in pending state")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ PAYMENT_RECOVERY: Unexpected error for payment {payment_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/payment/verify/{payment_id}")
async def verify_payment(payment_id: int):
    """Current payment status; pending payments are verified first"""
    try:
        return await _verify_now(payment_id, None)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ PAYMENT_VERIFY: Unexpected error for payment {payment_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")
