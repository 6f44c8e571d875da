"""
Fraud Detection Service
Produces a risk score and an action decision for a prospective payment.

Pipeline: whitelist -> blacklist -> velocity -> pattern anomalies -> rules.
A block decision is returned as data; callers must check ``action`` before
submitting anything to a gateway.
"""

import logging
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from config import Config
from models import (
    Payment, PaymentStatus, FraudRule, Blacklist, RiskProfile, FraudAlert,
    FraudAction, RiskLevel, AlertSeverity, AlertStatus, ListEntryType, utcnow
)
from services.rule_engine import RuleEngine, PaymentContext, resolve_action, rule_engine
from services.settings_store import SettingsStore, settings_store

logger = logging.getLogger(__name__)


@dataclass
class FraudAnalysisResult:
    """Outcome of a fraud screening"""
    risk_score: int
    action: str
    triggered_rules: List[str]
    risk_level: str
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_blocked(self) -> bool:
        return self.action == FraudAction.BLOCK.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def calculate_risk_level(score: int) -> str:
    if score >= 80:
        return RiskLevel.BLOCKED.value
    if score >= 60:
        return RiskLevel.HIGH.value
    if score >= 30:
        return RiskLevel.MEDIUM.value
    return RiskLevel.LOW.value


DEFAULT_RULES: List[Dict[str, Any]] = [
    {
        "name": "High Amount Transaction",
        "description": "Flag transactions above $1000",
        "rule_type": "amount",
        "priority": 90,
        "conditions": [{"field": "amount", "operator": ">", "value": 1000}],
        "action": FraudAction.REVIEW.value,
        "risk_score_impact": 20,
    },
    {
        "name": "Multiple Failed Payments",
        "description": "Block customers with many failures and few successes",
        "rule_type": "history",
        "priority": 95,
        "conditions": [
            {"field": "risk_profile.failed_payments", "operator": ">", "value": 5},
            {"field": "risk_profile.successful_payments", "operator": "<", "value": 2},
        ],
        "action": FraudAction.BLOCK.value,
        "risk_score_impact": 40,
    },
    {
        "name": "High Risk Countries",
        "description": "Review payments from high fraud-rate countries",
        "rule_type": "geo",
        "priority": 70,
        "conditions": [{"field": "country_code", "operator": "in", "value": ["NG", "ID", "PK", "BD", "EG"]}],
        "action": FraudAction.REVIEW.value,
        "risk_score_impact": 15,
    },
    {
        "name": "Very High Amount Transaction",
        "description": "Block transactions above $5000",
        "rule_type": "amount",
        "priority": 100,
        "conditions": [{"field": "amount", "operator": ">", "value": 5000}],
        "action": FraudAction.BLOCK.value,
        "risk_score_impact": 50,
    },
    {
        "name": "Disposable Email Domains",
        "description": "Review payments from throwaway mailboxes",
        "rule_type": "email",
        "priority": 60,
        "conditions": [{
            "field": "email",
            "operator": "regex",
            "value": r"@(10minutemail|tempmail|guerrillamail|mailinator|yopmail)\.",
        }],
        "action": FraudAction.REVIEW.value,
        "risk_score_impact": 25,
    },
    {
        "name": "New Customer Large Purchase",
        "description": "Review first purchases above $500",
        "rule_type": "history",
        "priority": 80,
        "conditions": [
            {"field": "risk_profile.successful_payments", "operator": "=", "value": 0},
            {"field": "amount", "operator": ">", "value": 500},
        ],
        "action": FraudAction.REVIEW.value,
        "risk_score_impact": 30,
    },
    {
        "name": "High Velocity Transactions",
        "description": "Review customers with repeated failures",
        "rule_type": "velocity",
        "priority": 85,
        "conditions": [{"field": "risk_profile.failed_payments", "operator": ">", "value": 3}],
        "action": FraudAction.REVIEW.value,
        "risk_score_impact": 35,
    },
]

DEFAULT_BLACKLIST: List[Tuple[str, str, str]] = [
    (ListEntryType.EMAIL.value, "test@example.com", "Known test account abuse"),
    (ListEntryType.EMAIL.value, "fraud@test.com", "Confirmed fraudulent activity"),
    (ListEntryType.EMAIL.value, "scammer@gmail.com", "Chargeback fraud"),
    (ListEntryType.IP.value, "192.168.1.100", "Suspicious traffic source"),
    (ListEntryType.IP.value, "10.0.0.50", "Suspicious traffic source"),
    (ListEntryType.COUNTRY.value, "XX", "Sanctioned region"),
]


class FraudDetectionService:
    """Risk scoring and fraud decision orchestration"""

    def __init__(self, engine: Optional[RuleEngine] = None, settings: Optional[SettingsStore] = None):
        self.rule_engine = engine or rule_engine
        self.settings = settings or settings_store

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze(
        self,
        session: Session,
        email: str,
        ip_address: Optional[str],
        amount,
        currency: str,
        country_code: Optional[str] = None,
        device_fingerprint: Optional[str] = None,
        payment_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> FraudAnalysisResult:
        """
        Screen a payment.

        Returns:
            FraudAnalysisResult with risk_score clamped to [0, 100] and the
            highest-severity action among everything that triggered.
        """
        now = now or utcnow()
        amount = Decimal(str(amount))

        if not self.settings.get_bool(session, SettingsStore.FRAUD_PROTECTION_ENABLED,
                                      Config.FRAUD_PROTECTION_ENABLED):
            logger.info(f"⚠️ FRAUD_PROTECTION_DISABLED: skipping screening for {email}")
            return FraudAnalysisResult(0, FraudAction.ALLOW.value, [], RiskLevel.LOW.value,
                                       {"protection_disabled": True})

        profile = self._get_or_create_profile(session, email)
        context = PaymentContext(
            email=email,
            amount=amount,
            currency=currency,
            ip_address=ip_address,
            country_code=country_code.upper() if country_code else None,
            device_fingerprint=device_fingerprint,
            occurred_at=now,
            risk_profile=profile.as_context(),
        )

        blacklist_hits = self.rule_engine.check_blacklist(session, context)
        whitelist_hits = self.rule_engine.check_whitelist(session, context)

        # Whitelist short-circuits unless something is also blacklisted
        if whitelist_hits and not blacklist_hits:
            triggered = [f"whitelisted_{entry.type}" for entry in whitelist_hits]
            result = FraudAnalysisResult(0, FraudAction.ALLOW.value, triggered, RiskLevel.LOW.value,
                                         {"whitelisted": True})
            self._update_profile(profile, context, result, now)
            self._record_on_payment(session, payment_id, result)
            logger.info(f"✅ FRAUD_WHITELISTED: {email} ({', '.join(triggered)})")
            return result

        score = 0
        actions: List[str] = []
        triggered: List[str] = []
        details: Dict[str, Any] = {}

        if blacklist_hits:
            score += Config.BLACKLIST_RISK_SCORE
            actions.append(FraudAction.BLOCK.value)
            for entry in blacklist_hits:
                triggered.append(f"blacklisted_{entry.type}")
            details["blacklist"] = [{"type": e.type, "reason": e.reason} for e in blacklist_hits]

        velocity_score, velocity_triggers, velocity_details = self._check_velocity(
            session, email, now, payment_id
        )
        if velocity_triggers:
            score += velocity_score
            triggered.extend(velocity_triggers)
            actions.append(FraudAction.REVIEW.value if "large_amount_velocity" in velocity_triggers
                           else FraudAction.FLAG.value)
        details["velocity"] = velocity_details

        pattern_score, pattern_triggers = self._check_patterns(profile, amount, now)
        if pattern_triggers:
            score += pattern_score
            triggered.extend(pattern_triggers)
            actions.append(FraudAction.MONITOR.value)

        for match in self.rule_engine.evaluate_rules(session, context):
            score += match.risk_score_impact
            triggered.append(match.name)
            actions.append(match.action)

        score = max(0, min(100, score))
        action = resolve_action(actions)
        # Score thresholds act as a floor on the decision
        if score >= Config.FRAUD_BLOCK_SCORE:
            action = resolve_action([action, FraudAction.BLOCK.value])
        elif score >= Config.FRAUD_REVIEW_SCORE:
            action = resolve_action([action, FraudAction.REVIEW.value])

        result = FraudAnalysisResult(score, action, triggered, calculate_risk_level(score), details)

        self._update_profile(profile, context, result, now)
        self._record_on_payment(session, payment_id, result)
        self._raise_alerts(session, result, email, ip_address, payment_id, bool(blacklist_hits))
        session.flush()

        log = logger.warning if result.action in (FraudAction.BLOCK.value, FraudAction.REVIEW.value) else logger.info
        log(
            f"🛡️ FRAUD_ANALYSIS: {email} score={score} action={action} rules={triggered}",
            extra={"risk_score": score, "action": action, "triggered_rules": triggered},
        )
        return result

    def _check_velocity(self, session: Session, email: str, now: datetime,
                        payment_id: Optional[int]) -> Tuple[int, List[str], Dict[str, int]]:
        statuses = [PaymentStatus.PENDING.value, PaymentStatus.COMPLETED.value]

        recent = select(func.count(Payment.id)).where(
            func.lower(Payment.customer_email) == func.lower(email),
            Payment.status.in_(statuses),
            Payment.created_at >= now - timedelta(minutes=Config.VELOCITY_WINDOW_MINUTES),
        )
        large = select(func.count(Payment.id)).where(
            func.lower(Payment.customer_email) == func.lower(email),
            Payment.amount > Config.LARGE_AMOUNT_THRESHOLD,
            Payment.created_at >= now - timedelta(minutes=Config.LARGE_AMOUNT_WINDOW_MINUTES),
        )
        if payment_id is not None:
            recent = recent.where(Payment.id != payment_id)
            large = large.where(Payment.id != payment_id)

        recent_count = session.execute(recent).scalar_one()
        large_count = session.execute(large).scalar_one()

        score = 0
        triggers: List[str] = []
        if recent_count > Config.VELOCITY_THRESHOLD:
            score += Config.VELOCITY_RISK_IMPACT
            triggers.append("velocity")
        if large_count > Config.LARGE_AMOUNT_VELOCITY_THRESHOLD:
            score += Config.LARGE_AMOUNT_RISK_IMPACT
            triggers.append("large_amount_velocity")
        return score, triggers, {"recent_payments": recent_count, "large_payments": large_count}

    def _check_patterns(self, profile: RiskProfile, amount: Decimal, now: datetime) -> Tuple[int, List[str]]:
        patterns = profile.payment_patterns or {}
        if not profile.successful_payments or not patterns:
            return 0, []

        score = 0
        triggers = []
        average = patterns.get("average_amount")
        if average:
            deviation = abs(float(amount) - float(average)) / max(float(average), 1.0)
            if deviation > 3:
                score += 15
                triggers.append("amount_pattern_anomaly")

        typical_hours = patterns.get("typical_hours") or []
        if typical_hours and now.hour not in typical_hours:
            score += 10
            triggers.append("time_pattern_anomaly")
        return score, triggers

    # ------------------------------------------------------------------
    # Risk profiles
    # ------------------------------------------------------------------

    def _get_or_create_profile(self, session: Session, email: str) -> RiskProfile:
        profile = session.execute(
            select(RiskProfile).where(RiskProfile.email == email)
        ).scalar_one_or_none()
        if profile is None:
            profile = RiskProfile(email=email, successful_payments=0, failed_payments=0,
                                  chargebacks=0, total_amount=0, risk_score=0,
                                  risk_level=RiskLevel.LOW.value)
            session.add(profile)
            session.flush()
        return profile

    def _update_profile(self, profile: RiskProfile, context: PaymentContext,
                        result: FraudAnalysisResult, now: datetime) -> None:
        profile.risk_score = result.risk_score
        profile.risk_level = result.risk_level
        profile.last_activity_at = now
        if context.ip_address:
            profile.ip_address = context.ip_address
        if context.country_code:
            profile.country_code = context.country_code
        if context.device_fingerprint:
            fingerprints = list(profile.device_fingerprints or [])
            if context.device_fingerprint not in fingerprints:
                fingerprints.append(context.device_fingerprint)
                profile.device_fingerprints = fingerprints

    def record_payment_outcome(self, session: Session, email: str, amount, succeeded: bool,
                               when: Optional[datetime] = None) -> RiskProfile:
        """Fold a settled payment into the customer's risk profile"""
        when = when or utcnow()
        profile = self._get_or_create_profile(session, email)
        if succeeded:
            previous = profile.successful_payments or 0
            patterns = dict(profile.payment_patterns or {})
            average = float(patterns.get("average_amount") or 0)
            patterns["average_amount"] = round((average * previous + float(amount)) / (previous + 1), 2)
            hours = set(patterns.get("typical_hours") or [])
            hours.add(when.hour)
            patterns["typical_hours"] = sorted(hours)
            profile.payment_patterns = patterns
            profile.successful_payments = previous + 1
            profile.total_amount = Decimal(str(profile.total_amount or 0)) + Decimal(str(amount))
        else:
            profile.failed_payments = (profile.failed_payments or 0) + 1
        profile.last_activity_at = when
        session.flush()
        return profile

    def _record_on_payment(self, session: Session, payment_id: Optional[int],
                           result: FraudAnalysisResult) -> None:
        if payment_id is None:
            return
        payment = session.get(Payment, payment_id)
        if payment is not None:
            payment.fraud_score = result.risk_score
            payment.fraud_action = result.action

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def _raise_alerts(self, session: Session, result: FraudAnalysisResult, email: str,
                      ip_address: Optional[str], payment_id: Optional[int], blacklisted: bool) -> None:
        if blacklisted:
            self._create_alert(
                session, "blacklist_match", AlertSeverity.CRITICAL.value,
                "Blacklisted customer attempted payment",
                f"Payment attempt matched blacklist entries: {result.triggered_rules}",
                result, email, ip_address, payment_id,
            )
        elif result.risk_score >= Config.FRAUD_REVIEW_SCORE:
            severity = AlertSeverity.HIGH.value if result.risk_score >= Config.FRAUD_BLOCK_SCORE else AlertSeverity.MEDIUM.value
            self._create_alert(
                session, "high_risk_score", severity,
                f"High risk payment (score {result.risk_score})",
                f"Triggered: {', '.join(result.triggered_rules)}",
                result, email, ip_address, payment_id,
            )

    def _create_alert(self, session: Session, alert_type: str, severity: str, title: str,
                      description: str, result: FraudAnalysisResult, email: str,
                      ip_address: Optional[str], payment_id: Optional[int]) -> FraudAlert:
        alert = FraudAlert(
            alert_id=f"FA-{uuid.uuid4().hex[:12].upper()}",
            alert_type=alert_type,
            severity=severity,
            title=title,
            description=description,
            payment_id=payment_id,
            email=email,
            ip_address=ip_address,
            risk_score=result.risk_score,
            triggered_rules=list(result.triggered_rules),
            status=AlertStatus.OPEN.value,
            alert_metadata={"action": result.action, "risk_level": result.risk_level},
        )
        session.add(alert)
        logger.warning(f"🚨 FRAUD_ALERT: {alert.alert_id} {severity} {alert_type} for {email}")
        return alert

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def block_customer(self, session: Session, email: str, reason: str,
                       until: Optional[datetime] = None, added_by: str = "system") -> Blacklist:
        entry = Blacklist(
            type=ListEntryType.EMAIL.value,
            value=email.lower(),
            reason=reason,
            is_active=True,
            expires_at=until,
            added_by=added_by,
        )
        session.add(entry)
        profile = self._get_or_create_profile(session, email)
        profile.is_blocked = True
        profile.blocked_until = until
        profile.blocked_reason = reason
        session.flush()
        logger.warning(f"⛔ CUSTOMER_BLOCKED: {email} until={until} reason={reason}")
        return entry

    def mark_false_positive(self, session: Session, rule_id: int) -> Optional[FraudRule]:
        rule = session.get(FraudRule, rule_id)
        if rule is None:
            return None
        rule.mark_false_positive()
        session.flush()
        logger.info(f"📉 FALSE_POSITIVE: rule {rule.name} accuracy now {rule.accuracy_rate:.1f}%")
        return rule

    def get_fraud_statistics(self, session: Session, days: int = 30) -> Dict[str, Any]:
        since = utcnow() - timedelta(days=days)

        alerts_by_severity = dict(session.execute(
            select(FraudAlert.severity, func.count(FraudAlert.id))
            .where(FraudAlert.created_at >= since)
            .group_by(FraudAlert.severity)
        ).all())
        open_alerts = session.execute(
            select(func.count(FraudAlert.id)).where(FraudAlert.status == AlertStatus.OPEN.value)
        ).scalar_one()
        blocked_payments = session.execute(
            select(func.count(Payment.id)).where(
                Payment.created_at >= since,
                Payment.fraud_action == FraudAction.BLOCK.value,
            )
        ).scalar_one()
        average_score = session.execute(
            select(func.avg(Payment.fraud_score)).where(
                Payment.created_at >= since, Payment.fraud_score.isnot(None)
            )
        ).scalar()
        top_rules = session.execute(
            select(FraudRule.name, FraudRule.times_triggered)
            .where(FraudRule.times_triggered > 0)
            .order_by(FraudRule.times_triggered.desc())
            .limit(5)
        ).all()

        return {
            "period_days": days,
            "total_alerts": sum(alerts_by_severity.values()),
            "alerts_by_severity": alerts_by_severity,
            "open_alerts": open_alerts,
            "blocked_payments": blocked_payments,
            "average_risk_score": round(float(average_score or 0), 2),
            "top_rules": [{"name": name, "times_triggered": count} for name, count in top_rules],
        }

    def seed_default_rules(self, session: Session) -> int:
        """Install the default rules and blacklist entries; existing names/values are left alone"""
        created = 0
        existing_rules = set(session.execute(select(FraudRule.name)).scalars())
        for definition in DEFAULT_RULES:
            if definition["name"] in existing_rules:
                continue
            session.add(FraudRule(is_active=True, **definition))
            created += 1

        existing_entries = set(session.execute(select(Blacklist.type, Blacklist.value)).all())
        for entry_type, value, reason in DEFAULT_BLACKLIST:
            if (entry_type, value) in existing_entries:
                continue
            session.add(Blacklist(type=entry_type, value=value, reason=reason,
                                  is_active=True, added_by="system"))
            created += 1
        session.flush()
        logger.info(f"🌱 FRAUD_DEFAULTS_SEEDED: {created} records created")
        return created


# Global instance
fraud_detection_service = FraudDetectionService()
