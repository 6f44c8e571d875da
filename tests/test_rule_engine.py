"""
Test Fraud Rule Engine
Operator table, dotted field resolution, list lookups and rule evaluation
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from models import Blacklist, Whitelist, FraudRule, utcnow
from services.rule_engine import (
    PaymentContext, RuleEngine, condition_matches, resolve_action, resolve_field, rule_matches
)


def _context(**overrides):
    values = {"email": "Buyer@Shop.Example", "amount": Decimal("120.00"), "currency": "USD"}
    values.update(overrides)
    return PaymentContext(**values)


class TestOperators:
    """Condition evaluation through the operator table"""

    @pytest.mark.parametrize("operator,value,expected", [
        (">", 100, True),
        (">", 120, False),
        (">=", 120, True),
        ("<", "200", True),
        ("<=", 119.99, False),
        ("=", "120", True),
        ("!=", 120, False),
    ])
    def test_numeric_operators(self, operator, value, expected):
        condition = {"field": "amount", "operator": operator, "value": value}
        assert condition_matches(condition, {"amount": 120.0}) is expected

    def test_string_equality_is_case_insensitive(self):
        assert condition_matches({"field": "currency", "operator": "=", "value": "usd"}, {"currency": "USD"})

    def test_in_and_not_in(self):
        context = {"country_code": "ng"}
        assert condition_matches({"field": "country_code", "operator": "in", "value": ["NG", "PK"]}, context)
        assert not condition_matches({"field": "country_code", "operator": "not_in", "value": ["NG"]}, context)
        # A scalar right-hand side never matches list operators
        assert not condition_matches({"field": "country_code", "operator": "in", "value": "NG"}, context)

    def test_contains_on_strings_and_lists(self):
        assert condition_matches({"field": "email", "operator": "contains", "value": "SHOP"},
                                 {"email": "buyer@shop.example"})
        assert condition_matches({"field": "tags", "operator": "contains", "value": "vip"},
                                 {"tags": ["new", "VIP"]})

    def test_regex_accepts_delimited_patterns(self):
        context = {"email": "someone@mailinator.com"}
        assert condition_matches({"field": "email", "operator": "regex", "value": r"/@mailinator\./"}, context)
        assert condition_matches({"field": "email", "operator": "regex", "value": r"@MAILINATOR\."}, context)

    def test_invalid_regex_never_matches(self):
        assert not condition_matches({"field": "email", "operator": "regex", "value": "(unclosed"},
                                     {"email": "a@b.c"})

    def test_unknown_operator_never_matches(self):
        assert not condition_matches({"field": "amount", "operator": "~=", "value": 1}, {"amount": 1})

    def test_missing_or_incomparable_field_never_matches(self):
        assert not condition_matches({"field": "risk_profile.failed_payments", "operator": ">", "value": 1}, {})
        assert not condition_matches({"field": "email", "operator": ">", "value": 1}, {"email": "x@y.z"})

    def test_resolve_field_walks_dotted_paths(self):
        context = {"risk_profile": {"failed_payments": 4}}
        assert resolve_field(context, "risk_profile.failed_payments") == 4

    def test_rule_requires_every_condition(self):
        conditions = [
            {"field": "amount", "operator": ">", "value": 100},
            {"field": "country_code", "operator": "=", "value": "US"},
        ]
        assert rule_matches(conditions, {"amount": 150, "country_code": "US"})
        assert not rule_matches(conditions, {"amount": 150, "country_code": "DE"})
        assert not rule_matches([], {"amount": 150})


class TestActionResolution:

    def test_highest_severity_wins(self):
        assert resolve_action(["monitor", "block", "review"]) == "block"
        assert resolve_action(["flag", "monitor"]) == "flag"

    def test_nothing_triggered_allows(self):
        assert resolve_action([]) == "allow"


class TestPaymentContext:

    def test_as_dict_exposes_derived_fields(self):
        context = _context(occurred_at=datetime(2026, 3, 1, 14, 30), country_code="US",
                           risk_profile={"successful_payments": 2})
        data = context.as_dict()
        assert data["email_domain"] == "shop.example"
        assert data["hour"] == 14
        assert data["amount"] == 120.0
        assert data["risk_profile"]["successful_payments"] == 2


class TestRuleEngine:
    """Database-backed lookups and evaluation"""

    def test_blacklist_matches_email_case_insensitively(self, session):
        session.add(Blacklist(type="email", value="buyer@shop.example", is_active=True))
        session.flush()
        hits = RuleEngine().check_blacklist(session, _context())
        assert [hit.value for hit in hits] == ["buyer@shop.example"]

    def test_expired_and_inactive_entries_are_ignored(self, session):
        session.add(Blacklist(type="email", value="buyer@shop.example", is_active=True,
                              expires_at=utcnow() - timedelta(hours=1)))
        session.add(Blacklist(type="ip", value="198.51.100.7", is_active=False))
        session.flush()
        assert RuleEngine().check_blacklist(session, _context(ip_address="198.51.100.7")) == []

    def test_country_entries_only_on_blacklist(self, session):
        session.add(Blacklist(type="country", value="xx", is_active=True))
        session.add(Whitelist(type="country", value="XX", is_active=True))
        session.flush()
        engine = RuleEngine()
        context = _context(country_code="XX")
        assert len(engine.check_blacklist(session, context)) == 1
        assert engine.check_whitelist(session, context) == []

    def test_evaluate_rules_orders_by_priority_and_counts_triggers(self, session):
        low = FraudRule(name="Low", priority=10, action="flag", risk_score_impact=5,
                        conditions=[{"field": "amount", "operator": ">", "value": 50}])
        high = FraudRule(name="High", priority=90, action="review", risk_score_impact=20,
                         conditions=[{"field": "amount", "operator": ">", "value": 100}])
        inactive = FraudRule(name="Off", priority=100, action="block", risk_score_impact=50, is_active=False,
                             conditions=[{"field": "amount", "operator": ">", "value": 1}])
        session.add_all([low, high, inactive])
        session.flush()

        matches = RuleEngine().evaluate_rules(session, _context())

        assert [m.name for m in matches] == ["High", "Low"]
        assert high.times_triggered == 1
        assert high.last_triggered_at is not None
        assert inactive.times_triggered == 0

    def test_rule_on_risk_profile_history(self, session):
        session.add(FraudRule(
            name="Repeat Failures", priority=50, action="block", risk_score_impact=40,
            conditions=[{"field": "risk_profile.failed_payments", "operator": ">", "value": 5}],
        ))
        session.flush()
        engine = RuleEngine()
        assert engine.evaluate_rules(session, _context(risk_profile={"failed_payments": 6}))
        assert not engine.evaluate_rules(session, _context(risk_profile={"failed_payments": 1}))
