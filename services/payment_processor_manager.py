"""Payment Processor Manager - gateway registry, payment initiation and gateway reassignment"""

import logging
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from config import Config
from models import Payment, PaymentAccount, PaymentStatus, PaymentType, utcnow
from services.account_selector import AccountSelector, AccountSelectionError, account_selector
from services.fraud_detection_service import FraudDetectionService, fraud_detection_service
from services.gateway_client import (
    GatewayClient, GatewayError, GatewayTerminalError, PaymentRequest,
    PayPalLikeGatewayClient, StripeLikeGatewayClient,
)
from services.notification_service import NotificationEvents, notification_service
from utils.payment_state_validator import PaymentStateValidator, StateTransitionError

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Optional[PaymentAccount]], GatewayClient]


class UnknownGatewayError(GatewayTerminalError):
    """No client registered for the gateway name"""
    pass


def _stripe_factory(account: Optional[PaymentAccount]) -> GatewayClient:
    credentials = (account.credentials or {}) if account else {}
    return StripeLikeGatewayClient(
        api_key=credentials.get("api_key"),
        base_url=credentials.get("base_url"),
    )


def _paypal_factory(account: Optional[PaymentAccount]) -> GatewayClient:
    credentials = (account.credentials or {}) if account else {}
    return PayPalLikeGatewayClient(
        client_id=credentials.get("client_id"),
        client_secret=credentials.get("client_secret"),
        base_url=credentials.get("base_url"),
    )


class PaymentProcessorManager:
    """
    Owns the gateway clients and the payment initiation pipeline:
    fraud screening -> account selection -> gateway submission.
    """

    def __init__(self, selector: Optional[AccountSelector] = None,
                 fraud: Optional[FraudDetectionService] = None):
        self.selector = selector or account_selector
        self.fraud = fraud or fraud_detection_service
        self._clients: Dict[str, GatewayClient] = {}
        self._account_clients: Dict[int, GatewayClient] = {}
        self._factories: Dict[str, ClientFactory] = {
            StripeLikeGatewayClient.name: _stripe_factory,
            PayPalLikeGatewayClient.name: _paypal_factory,
        }
        logger.info(f"Payment Manager initialized: gateways={self.available_gateways()}")

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register_client(self, gateway_name: str, client: GatewayClient) -> None:
        """Use one client for every account of the gateway"""
        self._clients[gateway_name] = client
        self._account_clients.clear()

    def register_factory(self, gateway_name: str, factory: ClientFactory) -> None:
        self._factories[gateway_name] = factory
        self._account_clients.clear()

    def reset(self) -> None:
        self._clients.clear()
        self._account_clients.clear()

    def available_gateways(self) -> List[str]:
        return sorted(set(self._clients) | set(self._factories))

    def get_client(self, gateway_name: str, account: Optional[PaymentAccount] = None) -> GatewayClient:
        client = self._clients.get(gateway_name)
        if client is not None:
            return client
        factory = self._factories.get(gateway_name)
        if factory is None:
            raise UnknownGatewayError(f"Unknown payment gateway: {gateway_name}", gateway_name)
        if account is None or account.id is None:
            return factory(None)
        if account.id not in self._account_clients:
            self._account_clients[account.id] = factory(account)
        return self._account_clients[account.id]

    def client_for_payment(self, session: Session, payment: Payment) -> GatewayClient:
        account = session.get(PaymentAccount, payment.payment_account_id) if payment.payment_account_id else None
        return self.get_client(payment.payment_gateway, account)

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------

    async def initiate_payment(
        self,
        session: Session,
        gateway_name: str,
        amount,
        currency: str,
        customer_email: str,
        customer_name: Optional[str] = None,
        ip_address: Optional[str] = None,
        country_code: Optional[str] = None,
        device_fingerprint: Optional[str] = None,
        plan_id: Optional[int] = None,
        subscription_id: Optional[int] = None,
        is_renewal: bool = False,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a pending payment, screen it, pick an account and submit it.

        A fraud block, an exhausted account pool or a gateway error all fail
        the payment and come back as {"success": False, ...}.
        """
        payment = Payment(
            amount=Decimal(str(amount)),
            currency=currency.upper(),
            status=PaymentStatus.PENDING.value,
            type=PaymentType.RENEWAL.value if is_renewal else PaymentType.PAYMENT.value,
            payment_gateway=gateway_name,
            customer_email=customer_email,
            customer_name=customer_name,
            ip_address=ip_address,
            country_code=country_code,
            device_fingerprint=device_fingerprint,
            plan_id=plan_id,
            subscription_id=subscription_id,
            is_renewal=is_renewal,
        )
        session.add(payment)
        session.flush()

        fraud = self.fraud.analyze(
            session, customer_email, ip_address, payment.amount, payment.currency,
            country_code=country_code, device_fingerprint=device_fingerprint, payment_id=payment.id,
        )
        if fraud.is_blocked:
            self._fail(session, payment, f"Blocked by fraud screening (score {fraud.risk_score})")
            logger.warning(f"🛑 PAYMENT_BLOCKED: Payment {payment.id} score={fraud.risk_score}")
            return {"success": False, "error": "blocked_by_fraud_screening",
                    "payment_id": payment.id, "fraud": fraud.to_dict()}

        try:
            selection = self.selector.select_account(session, gateway_name, {"payment_id": payment.id})
        except AccountSelectionError as e:
            self._fail(session, payment, f"No merchant account available: {e}")
            return {"success": False, "error": "no_available_account",
                    "payment_id": payment.id, "fraud": fraud.to_dict()}

        account = selection.account
        payment.payment_account_id = account.id
        try:
            reference = await self.get_client(gateway_name, account).submit_payment(
                self._build_request(payment, description), timeout=Config.GATEWAY_REQUEST_TIMEOUT
            )
        except GatewayError as e:
            logger.error(f"❌ GATEWAY_SUBMIT_FAILED: Payment {payment.id} via {gateway_name}: {e}")
            self.selector.record_transaction_outcome(session, account.id, False)
            self._fail(session, payment, f"Gateway submission failed: {e}")
            return {"success": False, "error": "gateway_submission_failed",
                    "payment_id": payment.id, "fraud": fraud.to_dict()}

        payment.gateway_payment_id = reference
        payment.append_note(f"Submitted to {gateway_name} via account {account.account_id}")
        session.flush()
        logger.info(
            f"✅ PAYMENT_SUBMITTED: Payment {payment.id} -> {gateway_name}/{account.account_id} ref={reference}"
        )
        return {
            "success": True,
            "payment_id": payment.id,
            "reference": reference,
            "account_id": account.account_id,
            "selection_id": selection.selection_id,
            "fraud": fraud.to_dict(),
        }

    # ------------------------------------------------------------------
    # Reassignment
    # ------------------------------------------------------------------

    async def reassign_payment(self, session: Session, payment_id: int,
                               gateway_name: Optional[str] = None) -> Dict[str, Any]:
        """
        Move a pending or failed payment to another gateway/account and resubmit it.

        Without gateway_name the first other available gateway is used; naming the
        payment's own gateway picks a different account on it.
        """
        payment = session.get(Payment, payment_id)
        if payment is None:
            return {"success": False, "error": "Payment not found"}
        if PaymentStatus(payment.status) not in PaymentStateValidator.REASSIGNABLE_STATES:
            return {"success": False, "error": f"Payment is {payment.status} and cannot be reassigned"}

        target = gateway_name or next(
            (name for name in self.available_gateways() if name != payment.payment_gateway), None
        )
        if target is None:
            return {"success": False, "error": "No alternate gateway available"}

        context: Dict[str, Any] = {"payment_id": payment.id}
        if target == payment.payment_gateway and payment.payment_account_id:
            context["exclude_account_ids"] = [payment.payment_account_id]
        try:
            selection = self.selector.select_account(session, target, context)
        except AccountSelectionError as e:
            logger.warning(f"⚠️ REASSIGN_NO_ACCOUNT: Payment {payment.id} -> {target}: {e}")
            return {"success": False, "error": "No available account", "gateway": target}

        try:
            reference = await self.get_client(target, selection.account).submit_payment(
                self._build_request(payment, None), timeout=Config.GATEWAY_REQUEST_TIMEOUT
            )
        except GatewayError as e:
            logger.error(f"❌ REASSIGN_SUBMIT_FAILED: Payment {payment.id} -> {target}: {e}")
            self.selector.record_transaction_outcome(session, selection.account.id, False)
            return {"success": False, "error": "Gateway submission failed", "gateway": target}

        try:
            PaymentStateValidator.reopen_for_reassignment(payment)
        except StateTransitionError as e:
            return {"success": False, "error": str(e)}

        now = utcnow()
        entry = {
            "from_gateway": payment.payment_gateway,
            "from_account_id": payment.payment_account_id,
            "from_reference": payment.gateway_payment_id,
            "to_gateway": target,
            "to_account_id": selection.account.id,
            "to_reference": reference,
            "reassigned_at": now.isoformat(),
        }
        response = dict(payment.gateway_response or {})
        response["reassignments"] = list(response.get("reassignments") or []) + [entry]
        payment.gateway_response = response
        payment.append_note(
            f"Reassigned from {entry['from_gateway']} to {target} "
            f"(account {selection.account.account_id}) at {now.isoformat()}"
        )
        payment.payment_gateway = target
        payment.payment_account_id = selection.account.id
        payment.gateway_payment_id = reference
        payment.failure_reason = None
        payment.attempts = 0
        session.flush()

        logger.info(f"🔀 PAYMENT_REASSIGNED: Payment {payment.id} {entry['from_gateway']} -> {target}")
        return {"success": True, "payment_id": payment.id, "gateway": target,
                "account_id": selection.account.account_id, "reference": reference}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _build_request(payment: Payment, description: Optional[str]) -> PaymentRequest:
        return PaymentRequest(
            amount=Decimal(str(payment.amount)),
            currency=payment.currency,
            customer_email=payment.customer_email,
            description=description,
            reference=str(payment.id),
        )

    @staticmethod
    def _fail(session: Session, payment: Payment, reason: str) -> None:
        PaymentStateValidator.validate_and_transition(payment, PaymentStatus.FAILED)
        payment.failure_reason = reason
        payment.append_note(reason)
        session.flush()
        notification_service.emit(
            session, NotificationEvents.PAYMENT_FAILED, "payment", payment.id,
            transition_key=payment.settlement_key("failed"),
            payload={"reason": reason, "email": payment.customer_email},
        )


# Global instance
payment_processor_manager = PaymentProcessorManager()
