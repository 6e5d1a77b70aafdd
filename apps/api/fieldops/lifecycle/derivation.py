"""Pure status derivation for lifecycle entities.

Every entity type has an ordered rule table. A rule is a ``(name, predicate,
status)`` triple and the first predicate that holds decides the status; when
none holds the table's default applies. Predicates read fact attributes and a
``DerivationClock`` only, so the same facts and the same ``now`` always yield
the same status.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from decimal import Decimal
from typing import Any, NamedTuple
from zoneinfo import ZoneInfo

DEFAULT_FOLLOW_UP_AFTER = timedelta(days=3)


@dataclass(frozen=True, slots=True)
class DerivationPolicy:
    follow_up_after: timedelta = DEFAULT_FOLLOW_UP_AFTER
    business_timezone: tzinfo = timezone.utc

    @classmethod
    def from_settings(cls, *, quote_follow_up_days: int, business_timezone: str) -> DerivationPolicy:
        return cls(
            follow_up_after=timedelta(days=quote_follow_up_days),
            business_timezone=ZoneInfo(business_timezone),
        )


DEFAULT_POLICY = DerivationPolicy()


@dataclass(frozen=True, slots=True)
class DerivationClock:
    now: datetime
    today: date
    policy: DerivationPolicy

    @classmethod
    def at(cls, now: datetime, policy: DerivationPolicy = DEFAULT_POLICY) -> DerivationClock:
        aware_now = as_utc(now)
        return cls(now=aware_now, today=aware_now.astimezone(policy.business_timezone).date(), policy=policy)

    def local_date(self, value: datetime | date) -> date:
        if isinstance(value, datetime):
            return as_utc(value).astimezone(self.policy.business_timezone).date()
        return value


Predicate = Callable[[Any, DerivationClock], bool]


class StatusRule(NamedTuple):
    name: str
    predicate: Predicate
    status: str


@dataclass(frozen=True, slots=True)
class RuleTable:
    entity_type: str
    rules: tuple[StatusRule, ...]
    default: str

    def evaluate(self, facts: Any, clock: DerivationClock) -> str:
        for rule in self.rules:
            if rule.predicate(facts, clock):
                return rule.status
        return self.default

    def matching_rule(self, facts: Any, clock: DerivationClock) -> str | None:
        for rule in self.rules:
            if rule.predicate(facts, clock):
                return rule.name
        return None


def as_utc(value: datetime) -> datetime:
    # Naive timestamps come back from stores that drop the offset; they were written as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def amount(value: Decimal | int | float | str | None) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _is_set(field: str) -> Predicate:
    return lambda facts, clock: getattr(facts, field) is not None


# -- service requests ------------------------------------------------------


def _request_converted(facts: Any, clock: DerivationClock) -> bool:
    return facts.converted_to_quote_id is not None or facts.converted_to_job_id is not None


def _assessment_on(compare: Callable[[date, date], bool]) -> Predicate:
    def predicate(facts: Any, clock: DerivationClock) -> bool:
        scheduled_at = facts.assessment_scheduled_at
        return scheduled_at is not None and compare(clock.local_date(scheduled_at), clock.today)

    return predicate


REQUEST_RULES = RuleTable(
    entity_type="request",
    rules=(
        StatusRule("archived", _is_set("archived_at"), "archived"),
        StatusRule("converted", _request_converted, "converted"),
        StatusRule("assessment_completed", _is_set("assessment_completed_at"), "assessment_completed"),
        StatusRule("assessment_overdue", _assessment_on(lambda day, today: day < today), "assessment_overdue"),
        StatusRule("assessment_today", _assessment_on(lambda day, today: day == today), "assessment_today"),
        StatusRule("assessment_scheduled", _assessment_on(lambda day, today: day > today), "assessment_scheduled"),
    ),
    default="pending",
)


# -- quotes ----------------------------------------------------------------


def _quote_lost(facts: Any, clock: DerivationClock) -> bool:
    return bool(facts.lost_reason and facts.lost_reason.strip())


def _quote_pending_approval(facts: Any, clock: DerivationClock) -> bool:
    return facts.approval_status == "pending"


def _quote_expired(facts: Any, clock: DerivationClock) -> bool:
    return facts.sent_at is not None and facts.valid_until is not None and facts.valid_until < clock.today


def _quote_unanswered(facts: Any, clock: DerivationClock) -> bool:
    return facts.sent_at is not None and as_utc(facts.sent_at) < clock.now - clock.policy.follow_up_after


QUOTE_RULES = RuleTable(
    entity_type="quote",
    rules=(
        StatusRule("archived", _is_set("archived_at"), "lost"),
        StatusRule("converted", _is_set("converted_to_job_id"), "converted"),
        StatusRule("lost", _quote_lost, "lost"),
        StatusRule("approved", _is_set("client_approved_at"), "approved"),
        StatusRule("pending_approval", _quote_pending_approval, "pending_approval"),
        StatusRule("expired", _quote_expired, "follow_up"),
        StatusRule("unanswered", _quote_unanswered, "follow_up"),
        StatusRule("sent", _is_set("sent_at"), "sent"),
    ),
    default="draft",
)


# -- jobs --------------------------------------------------------------------

# Latest milestone first: the furthest-along timestamp decides the status.
JOB_MILESTONES: tuple[tuple[str, str], ...] = (
    ("invoiced_at", "invoiced"),
    ("work_completed_at", "completed"),
    ("work_started_at", "in_progress"),
    ("loaded_at", "loaded"),
    ("staging_completed_at", "staged"),
    ("picking_started_at", "picking"),
    ("ready_for_yard_at", "ready_for_yard"),
)


def _job_scheduled(facts: Any, clock: DerivationClock) -> bool:
    return facts.scheduled_date is not None and facts.assigned_crew_id is not None


JOB_RULES = RuleTable(
    entity_type="job",
    rules=(
        *(StatusRule(status, _is_set(field), status) for field, status in JOB_MILESTONES),
        StatusRule("scheduled", _job_scheduled, "scheduled"),
    ),
    default="won",
)


# -- invoices ----------------------------------------------------------------


def invoice_balance(facts: Any) -> Decimal:
    return amount(facts.total) - amount(facts.amount_paid)


def _invoice_paid(facts: Any, clock: DerivationClock) -> bool:
    return invoice_balance(facts) <= 0


def _invoice_past_due(facts: Any, clock: DerivationClock) -> bool:
    return facts.sent_at is not None and facts.due_date is not None and facts.due_date < clock.today


INVOICE_RULES = RuleTable(
    entity_type="invoice",
    rules=(
        StatusRule("written_off", _is_set("archived_at"), "bad_debt"),
        StatusRule("paid", _invoice_paid, "paid"),
        StatusRule("past_due", _invoice_past_due, "past_due"),
        StatusRule("sent", _is_set("sent_at"), "sent"),
    ),
    default="draft",
)


RULES_BY_ENTITY_TYPE: dict[str, RuleTable] = {
    table.entity_type: table for table in (REQUEST_RULES, QUOTE_RULES, JOB_RULES, INVOICE_RULES)
}


def derive_status(entity_type: str, facts: Any, now: datetime, policy: DerivationPolicy = DEFAULT_POLICY) -> str:
    return RULES_BY_ENTITY_TYPE[entity_type].evaluate(facts, DerivationClock.at(now, policy))


def derive_request_status(facts: Any, now: datetime, policy: DerivationPolicy = DEFAULT_POLICY) -> str:
    return derive_status("request", facts, now, policy)


def derive_quote_status(facts: Any, now: datetime, policy: DerivationPolicy = DEFAULT_POLICY) -> str:
    return derive_status("quote", facts, now, policy)


def derive_job_status(facts: Any, now: datetime, policy: DerivationPolicy = DEFAULT_POLICY) -> str:
    return derive_status("job", facts, now, policy)


def derive_invoice_status(facts: Any, now: datetime, policy: DerivationPolicy = DEFAULT_POLICY) -> str:
    return derive_status("invoice", facts, now, policy)
