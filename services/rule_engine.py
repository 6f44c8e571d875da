"""
Fraud Rule Engine
Evaluates a payment context against blacklist/whitelist entries and the
configurable FraudRule table.

Rule conditions are stored as an ordered list of {field, operator, value}
triples and evaluated through an explicit operator table. Fields use dotted
paths into the context (e.g. ``risk_profile.failed_payments``); a missing or
incomparable field never matches, it is not an error.
"""

import logging
import operator
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import select, update, or_
from sqlalchemy.orm import Session

from models import Blacklist, Whitelist, FraudRule, FraudAction, ListEntryType, utcnow

logger = logging.getLogger(__name__)

_MISSING = object()

# Severity used to resolve the final action: block > review > flag > monitor > allow
ACTION_SEVERITY: Dict[str, int] = {
    FraudAction.ALLOW.value: 0,
    FraudAction.MONITOR.value: 1,
    FraudAction.FLAG.value: 2,
    FraudAction.REVIEW.value: 3,
    FraudAction.BLOCK.value: 4,
}


@dataclass
class PaymentContext:
    """Typed view of the payment attributes rules may reference"""
    email: str
    amount: Decimal
    currency: str
    ip_address: Optional[str] = None
    country_code: Optional[str] = None
    device_fingerprint: Optional[str] = None
    occurred_at: datetime = field(default_factory=utcnow)
    risk_profile: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def email_domain(self) -> Optional[str]:
        if not self.email or "@" not in self.email:
            return None
        return self.email.rsplit("@", 1)[1].lower()

    def as_dict(self) -> Dict[str, Any]:
        data = {
            "email": self.email,
            "email_domain": self.email_domain,
            "amount": float(self.amount),
            "currency": self.currency,
            "ip": self.ip_address,
            "ip_address": self.ip_address,
            "country_code": self.country_code,
            "device_fingerprint": self.device_fingerprint,
            "hour": self.occurred_at.hour,
            "risk_profile": dict(self.risk_profile),
        }
        data.update(self.extra)
        return data


@dataclass
class RuleMatch:
    rule_id: int
    name: str
    action: str
    risk_score_impact: int


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _normalize(value: Any) -> Any:
    number = _as_number(value)
    if number is not None:
        return number
    if isinstance(value, str):
        return value.casefold()
    return value


def _numeric(op: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def compare(actual: Any, expected: Any) -> bool:
        a, b = _as_number(actual), _as_number(expected)
        if a is None or b is None:
            return False
        return op(a, b)
    return compare


def _equals(actual: Any, expected: Any) -> bool:
    return _normalize(actual) == _normalize(expected)


def _in(actual: Any, expected: Any) -> bool:
    if not isinstance(expected, (list, tuple, set)):
        return False
    needle = _normalize(actual)
    return any(needle == _normalize(candidate) for candidate in expected)


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, (list, tuple, set)):
        return _in(expected, list(actual))
    if actual is None:
        return False
    return str(expected).casefold() in str(actual).casefold()


def _regex(actual: Any, expected: Any) -> bool:
    if actual is None or not isinstance(expected, str):
        return False
    pattern = expected
    # Tolerate delimited patterns such as "/@mailinator\./"
    if len(pattern) >= 2 and pattern.startswith("/") and pattern.endswith("/"):
        pattern = pattern[1:-1]
    try:
        return re.search(pattern, str(actual), re.IGNORECASE) is not None
    except re.error as e:
        logger.warning(f"⚠️ RULE_ENGINE: invalid regex {expected!r}: {e}")
        return False


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    ">": _numeric(operator.gt),
    "<": _numeric(operator.lt),
    ">=": _numeric(operator.ge),
    "<=": _numeric(operator.le),
    "=": _equals,
    "==": _equals,
    "!=": lambda actual, expected: not _equals(actual, expected),
    "in": _in,
    "not_in": lambda actual, expected: isinstance(expected, (list, tuple, set)) and not _in(actual, expected),
    "contains": _contains,
    "regex": _regex,
}


def resolve_field(context: Dict[str, Any], path: str) -> Any:
    """Walk a dotted path through nested dicts; _MISSING when any hop is absent"""
    current: Any = context
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return _MISSING if current is None else current


def condition_matches(condition: Dict[str, Any], context: Dict[str, Any]) -> bool:
    field_path = condition.get("field")
    op = OPERATORS.get(condition.get("operator"))
    if not field_path or op is None:
        return False
    actual = resolve_field(context, field_path)
    if actual is _MISSING:
        return False
    return op(actual, condition.get("value"))


def rule_matches(conditions: Sequence[Dict[str, Any]], context: Dict[str, Any]) -> bool:
    """All conditions must match; an empty condition list never matches"""
    if not conditions:
        return False
    return all(condition_matches(condition, context) for condition in conditions)


def resolve_action(actions: Sequence[str]) -> str:
    """Highest-severity action wins; allow when nothing was triggered"""
    result = FraudAction.ALLOW.value
    for action in actions:
        if ACTION_SEVERITY.get(action, 0) > ACTION_SEVERITY[result]:
            result = action
    return result


class RuleEngine:
    """Blacklist/whitelist lookups and rule evaluation"""

    def _context_values(self, context: PaymentContext) -> Dict[str, Optional[str]]:
        return {
            ListEntryType.EMAIL.value: context.email.lower() if context.email else None,
            ListEntryType.IP.value: context.ip_address,
            ListEntryType.DEVICE.value: context.device_fingerprint,
            ListEntryType.COUNTRY.value: context.country_code.upper() if context.country_code else None,
        }

    def _matching_entries(self, session: Session, model, context: PaymentContext, types: Sequence[str]):
        now = utcnow()
        values = self._context_values(context)
        hits = []
        for entry_type in types:
            value = values.get(entry_type)
            if not value:
                continue
            stmt = select(model).where(
                model.type == entry_type,
                model.is_active.is_(True),
                or_(model.expires_at.is_(None), model.expires_at > now),
            )
            for entry in session.execute(stmt).scalars():
                candidate = entry.value.lower() if entry_type == ListEntryType.EMAIL.value else entry.value
                if entry_type == ListEntryType.COUNTRY.value:
                    candidate = entry.value.upper()
                if candidate == value:
                    hits.append(entry)
                    break
        return hits

    def check_whitelist(self, session: Session, context: PaymentContext) -> List[Whitelist]:
        return self._matching_entries(
            session, Whitelist, context,
            [ListEntryType.EMAIL.value, ListEntryType.IP.value, ListEntryType.DEVICE.value],
        )

    def check_blacklist(self, session: Session, context: PaymentContext) -> List[Blacklist]:
        return self._matching_entries(
            session, Blacklist, context,
            [ListEntryType.EMAIL.value, ListEntryType.IP.value,
             ListEntryType.DEVICE.value, ListEntryType.COUNTRY.value],
        )

    def active_rules(self, session: Session) -> List[FraudRule]:
        stmt = (
            select(FraudRule)
            .where(FraudRule.is_active.is_(True))
            .order_by(FraudRule.priority.desc(), FraudRule.id.asc())
        )
        return list(session.execute(stmt).scalars())

    def evaluate_rules(self, session: Session, context: PaymentContext) -> List[RuleMatch]:
        """
        Evaluate active rules by priority (highest first) and persist trigger counters.
        Counters are incremented with an atomic UPDATE so concurrent screenings do not lose counts.
        """
        values = context.as_dict()
        matches: List[RuleMatch] = []
        for rule in self.active_rules(session):
            conditions = rule.conditions if isinstance(rule.conditions, list) else []
            if not rule_matches(conditions, values):
                continue
            matches.append(RuleMatch(
                rule_id=rule.id,
                name=rule.name,
                action=rule.action,
                risk_score_impact=rule.risk_score_impact or 0,
            ))
            session.execute(
                update(FraudRule)
                .where(FraudRule.id == rule.id)
                .values(
                    times_triggered=FraudRule.times_triggered + 1,
                    last_triggered_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            session.expire(rule, ["times_triggered", "last_triggered_at"])
            logger.debug(f"🎯 RULE_TRIGGERED: {rule.name} (+{rule.risk_score_impact}, {rule.action})")
        return matches


# Global instance
rule_engine = RuleEngine()
