"""
Test Fraud Detection Service
Scoring pipeline: whitelist, blacklist, velocity, pattern anomalies and rules
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select

from models import Blacklist, FraudAlert, FraudRule, Payment, RiskProfile, Whitelist, utcnow
from services.fraud_detection_service import FraudDetectionService, calculate_risk_level
from services.settings_store import SettingsStore, settings_store


@pytest.fixture
def fraud():
    return FraudDetectionService()


def _analyze(fraud, session, email="alice@shop.example", amount=50, **kwargs):
    return fraud.analyze(session, email, kwargs.pop("ip_address", "203.0.113.5"), amount, "USD", **kwargs)


class TestRiskLevels:

    @pytest.mark.parametrize("score,level", [(0, "low"), (29, "low"), (30, "medium"), (60, "high"), (80, "blocked")])
    def test_calculate_risk_level(self, score, level):
        assert calculate_risk_level(score) == level


class TestFraudAnalysis:
    """End-to-end screening decisions"""

    def test_clean_customer_is_allowed(self, session, fraud):
        result = _analyze(fraud, session)

        assert result.risk_score == 0
        assert result.action == "allow"
        assert result.risk_level == "low"
        assert not result.is_blocked
        profile = session.execute(select(RiskProfile).where(RiskProfile.email == "alice@shop.example")).scalar_one()
        assert profile.last_activity_at is not None

    def test_blacklisted_email_is_blocked_and_alerted(self, session, fraud):
        fraud.seed_default_rules(session)

        result = _analyze(fraud, session, email="fraud@test.com")

        assert result.is_blocked
        assert result.risk_score >= 80
        assert result.risk_level == "blocked"
        assert "blacklisted_email" in result.triggered_rules
        alert = session.execute(select(FraudAlert)).scalar_one()
        assert alert.alert_type == "blacklist_match"
        assert alert.severity == "critical"
        assert alert.alert_id.startswith("FA-")

    def test_whitelist_short_circuits_rules(self, session, fraud):
        fraud.seed_default_rules(session)
        session.add(Whitelist(type="email", value="vip@shop.example", is_active=True))
        session.flush()

        result = _analyze(fraud, session, email="vip@shop.example", amount=6000)

        assert result.action == "allow"
        assert result.risk_score < 10
        assert result.triggered_rules == ["whitelisted_email"]
        assert result.details["whitelisted"] is True

    def test_blacklist_overrides_whitelist(self, session, fraud):
        session.add(Whitelist(type="email", value="both@shop.example", is_active=True))
        session.add(Blacklist(type="ip", value="198.51.100.9", is_active=True))
        session.flush()

        result = _analyze(fraud, session, email="both@shop.example", ip_address="198.51.100.9")

        assert result.is_blocked
        assert "blacklisted_ip" in result.triggered_rules

    def test_velocity_triggers_after_threshold(self, session, fraud, make_payment):
        for _ in range(3):
            make_payment(age_minutes=2, customer_email="fast@shop.example")
        assert "velocity" not in _analyze(fraud, session, email="fast@shop.example").triggered_rules

        make_payment(age_minutes=1, customer_email="fast@shop.example")
        result = _analyze(fraud, session, email="fast@shop.example")

        assert "velocity" in result.triggered_rules
        assert result.risk_score == 25
        assert result.action == "flag"
        assert result.details["velocity"]["recent_payments"] == 4

    def test_velocity_excludes_the_payment_being_screened(self, session, fraud, make_payment):
        payments = [make_payment(age_minutes=1, customer_email="fast@shop.example") for _ in range(4)]

        result = _analyze(fraud, session, email="fast@shop.example", payment_id=payments[-1].id)

        assert "velocity" not in result.triggered_rules
        assert result.details["velocity"]["recent_payments"] == 3

    def test_velocity_ignores_email_case(self, session, fraud, make_payment):
        for email in ("Fast@Shop.example", "FAST@shop.example", "fast@shop.EXAMPLE", "fast@shop.example"):
            make_payment(age_minutes=1, customer_email=email)

        result = _analyze(fraud, session, email="Fast@shop.example")

        assert "velocity" in result.triggered_rules
        assert result.details["velocity"]["recent_payments"] == 4

    def test_large_amount_velocity_requires_review(self, session, fraud, make_payment):
        for _ in range(3):
            make_payment(age_minutes=30, customer_email="big@shop.example", amount=Decimal("900.00"))

        result = _analyze(fraud, session, email="big@shop.example", amount=100)

        assert result.triggered_rules == ["large_amount_velocity"]
        assert result.risk_score == 20
        assert result.action == "review"

    def test_pattern_anomalies_raise_monitor(self, session, fraud):
        session.add(RiskProfile(email="regular@shop.example", successful_payments=3, failed_payments=0,
                                chargebacks=0, total_amount=60, risk_score=0, risk_level="low",
                                payment_patterns={"average_amount": 20, "typical_hours": [10]}))
        session.flush()

        result = _analyze(fraud, session, email="regular@shop.example", amount=500,
                          now=datetime(2026, 5, 4, 3, 0))

        assert set(result.triggered_rules) == {"amount_pattern_anomaly", "time_pattern_anomaly"}
        assert result.risk_score == 25
        assert result.action == "monitor"

    def test_score_floor_promotes_review(self, session, fraud):
        session.add(FraudRule(name="Odd Currency", priority=50, action="monitor", risk_score_impact=60,
                              conditions=[{"field": "currency", "operator": "=", "value": "USD"}]))
        session.flush()

        result = _analyze(fraud, session)

        assert result.risk_score == 60
        assert result.action == "review"

    def test_score_floor_promotes_block_and_clamps(self, session, fraud):
        for index in range(3):
            session.add(FraudRule(name=f"Heavy {index}", priority=50, action="flag", risk_score_impact=45,
                                  conditions=[{"field": "amount", "operator": ">", "value": 10}]))
        session.flush()

        result = _analyze(fraud, session)

        assert result.risk_score == 100
        assert result.action == "block"
        alert = session.execute(select(FraudAlert)).scalar_one()
        assert alert.alert_type == "high_risk_score"
        assert alert.severity == "high"

    def test_result_is_recorded_on_payment(self, session, fraud, make_payment):
        payment = make_payment(customer_email="alice@shop.example")

        _analyze(fraud, session, payment_id=payment.id)

        assert payment.fraud_score == 0
        assert payment.fraud_action == "allow"

    def test_protection_can_be_disabled_at_runtime(self, session, fraud):
        fraud.seed_default_rules(session)
        settings_store.set(session, SettingsStore.FRAUD_PROTECTION_ENABLED, False)

        result = _analyze(fraud, session, email="fraud@test.com")

        assert result.action == "allow"
        assert result.details == {"protection_disabled": True}


class TestRiskProfiles:

    def test_successful_outcome_updates_patterns(self, session, fraud):
        when = datetime(2026, 5, 4, 15, 0)
        fraud.record_payment_outcome(session, "alice@shop.example", Decimal("10.00"), True, when)
        profile = fraud.record_payment_outcome(session, "alice@shop.example", Decimal("30.00"), True, when)

        assert profile.successful_payments == 2
        assert profile.payment_patterns["average_amount"] == 20.0
        assert profile.payment_patterns["typical_hours"] == [15]
        assert Decimal(str(profile.total_amount)) == Decimal("40.00")

    def test_failed_outcome_counts_failures(self, session, fraud):
        profile = fraud.record_payment_outcome(session, "alice@shop.example", 10, False)
        assert profile.failed_payments == 1
        assert profile.successful_payments == 0


class TestAdministration:

    def test_block_customer_blocks_future_payments(self, session, fraud):
        fraud.block_customer(session, "Mallory@Shop.Example", "chargebacks")

        result = _analyze(fraud, session, email="mallory@shop.example")

        assert result.is_blocked
        profile = session.execute(select(RiskProfile).where(RiskProfile.email == "Mallory@Shop.Example")).scalar_one()
        assert profile.is_blocked

    def test_false_positive_updates_accuracy(self, session, fraud):
        rule = FraudRule(name="Noisy", priority=10, action="flag", risk_score_impact=5, times_triggered=20,
                         false_positives=2, conditions=[{"field": "amount", "operator": ">", "value": 0}])
        session.add(rule)
        session.flush()

        updated = fraud.mark_false_positive(session, rule.id)

        assert updated.false_positives == 3
        assert updated.accuracy_rate == pytest.approx(85.0)
        assert fraud.mark_false_positive(session, 99999) is None

    def test_seed_default_rules_is_idempotent(self, session, fraud):
        assert fraud.seed_default_rules(session) > 0
        assert fraud.seed_default_rules(session) == 0

    def test_statistics_summarize_alerts(self, session, fraud, make_payment):
        fraud.seed_default_rules(session)
        payment = make_payment(customer_email="fraud@test.com")
        _analyze(fraud, session, email="fraud@test.com", payment_id=payment.id)

        stats = fraud.get_fraud_statistics(session, days=7)

        assert stats["total_alerts"] == 1
        assert stats["alerts_by_severity"] == {"critical": 1}
        assert stats["open_alerts"] == 1
        assert stats["blocked_payments"] == 1
