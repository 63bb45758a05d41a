"""
Quota Ledger Service.

Owns every write to QuotaLedgerEntry counters. No other module mutates
``current_completions``.

Reservation is an optimistic read-check-write:
    1. read the entry (id, version, counters); NOT_FOUND fails fast
    2. check the bound in Python; full/inactive returns QUOTA_EXCEEDED
       without touching the row
    3. UPDATE ... WHERE id = :id AND version = :version
                    AND current_completions < completion_limit
    4. 0 rows affected → another writer committed first: rollback,
       jittered backoff, go back to 1
A plain "increment by one" has no notion of the upper bound and can
overshoot the limit when writers race; the guarded UPDATE cannot.

Each call runs in its own transaction: it commits or rolls back the
current session, so callers must not hold uncommitted work.

Usage:
    from velotrace.services import quota_ledger
    outcome = quota_ledger.try_reserve("Q1", "route-1", user_id="u-42")
    if outcome is ReservationOutcome.RESERVED:
        ...
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Callable

from flask import current_app
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError

from velotrace.core.exceptions import NotFoundError, TransientContentionError, ValidationError
from velotrace.models import db
from velotrace.models.quota import QuotaLedgerEntry
from velotrace.models.submission import SubmissionRecord
from velotrace.services import cache_service
from velotrace.services.route_catalog import limit_for
from velotrace.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


class ReservationOutcome(str, Enum):
    RESERVED = "reserved"
    QUOTA_EXCEEDED = "quota_exceeded"
    NOT_FOUND = "not_found"


# ═════════════════════════════════════════════════════════════════════════════
# Conditional write machinery
# ═════════════════════════════════════════════════════════════════════════════

_ROW_COLUMNS = (
    QuotaLedgerEntry.id,
    QuotaLedgerEntry.questionnaire_id,
    QuotaLedgerEntry.route_id,
    QuotaLedgerEntry.current_completions,
    QuotaLedgerEntry.completion_limit,
    QuotaLedgerEntry.is_active,
    QuotaLedgerEntry.version,
    QuotaLedgerEntry.last_updated,
)

_MISSING = object()


@dataclass
class _Step:
    """What a planner decided after looking at the current row.

    values=None means "no write": the result is returned as-is.
    """
    result: object
    values: dict | None = None
    guards: list = field(default_factory=list)


def _max_attempts() -> int:
    return max(1, int(current_app.config.get("LEDGER_MAX_ATTEMPTS", 5)))


def _backoff(attempt: int) -> None:
    """Full-jitter exponential backoff between conditional-write attempts."""
    base_ms = current_app.config.get("LEDGER_BACKOFF_BASE_MS", 10)
    if not base_ms:
        return
    time.sleep(random.uniform(0, base_ms * (2 ** (attempt - 1))) / 1000.0)


def _read_row(*criteria):
    return db.session.execute(select(*_ROW_COLUMNS).where(*criteria)).first()


def _run_conditional(criteria: tuple, plan: Callable, *, label: str, key: tuple[str, str]):
    """Read → plan → guarded UPDATE, retried while concurrent writers win.

    Returns the planner's result, or _MISSING when no row matches.
    Raises TransientContentionError when the retry budget is exhausted.
    """
    attempts = _max_attempts()
    for attempt in range(1, attempts + 1):
        row = _read_row(*criteria)
        if row is None:
            db.session.rollback()
            return _MISSING

        step = plan(row)
        if step.values is None:
            db.session.rollback()
            return step.result

        values = dict(step.values)
        values["version"] = row.version + 1
        values["last_updated"] = utcnow()
        try:
            result = db.session.execute(
                update(QuotaLedgerEntry)
                .where(
                    QuotaLedgerEntry.id == row.id,
                    QuotaLedgerEntry.version == row.version,
                    *step.guards,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                db.session.commit()
                cache_service.invalidate_snapshot(row.questionnaire_id)
                if attempt > 1:
                    logger.info(
                        "Ledger %s succeeded after retry",
                        label,
                        extra={"questionnaire_id": row.questionnaire_id,
                               "route_id": row.route_id, "attempts": attempt},
                    )
                return step.result
            db.session.rollback()
            logger.debug("Ledger %s lost version race on %s/%s (attempt %d/%d)",
                         label, row.questionnaire_id, row.route_id, attempt, attempts)
        except OperationalError as exc:
            # Lock timeouts / serialization failures count as contention
            db.session.rollback()
            logger.debug("Ledger %s store contention on %s/%s: %s",
                         label, row.questionnaire_id, row.route_id, exc)
        if attempt < attempts:
            _backoff(attempt)

    logger.warning(
        "Ledger %s retry budget exhausted",
        label,
        extra={"questionnaire_id": key[0], "route_id": key[1], "attempts": attempts},
    )
    raise TransientContentionError(key[0], key[1], attempts)


def _pair_criteria(questionnaire_id: str, route_id: str) -> tuple:
    return (
        QuotaLedgerEntry.questionnaire_id == questionnaire_id,
        QuotaLedgerEntry.route_id == route_id,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Initialization
# ═════════════════════════════════════════════════════════════════════════════

def _route_fields(route) -> dict:
    if isinstance(route, dict):
        return {
            "route_id": route.get("route_id") or route.get("id"),
            "name": route.get("name") or route.get("route_id") or route.get("id"),
            "category": route.get("category") or "other",
        }
    return {"route_id": route.route_id, "name": route.name, "category": route.category}


def initialize_tracking(questionnaire_id: str, routes, category_limits: dict | None = None) -> dict:
    """Create missing ledger entries for ``routes`` under a questionnaire.

    Idempotent: routes that already have an entry are skipped and their
    counters are left alone. Safe to run next to live traffic: a
    concurrent initializer inserting the same pair hits the unique
    constraint and the route is counted as skipped.

    Args:
        questionnaire_id: Questionnaire key.
        routes: Route rows or catalog dicts ({route_id, name, category,
                completion_limit}).
        category_limits: Category → default limit. Defaults to the
                CATEGORY_COMPLETION_LIMITS config value.

    Returns:
        {"created": int, "skipped": int}
    """
    if not questionnaire_id:
        raise ValidationError("questionnaire_id is required")

    existing = {
        rid for (rid,) in db.session.execute(
            select(QuotaLedgerEntry.route_id).where(
                QuotaLedgerEntry.questionnaire_id == questionnaire_id
            )
        )
    }

    created = 0
    skipped = 0
    for route in routes:
        fields = _route_fields(route)
        if not fields["route_id"]:
            raise ValidationError("Every route needs a route_id", details={"route": str(route)})
        if fields["route_id"] in existing:
            skipped += 1
            continue

        entry = QuotaLedgerEntry(
            questionnaire_id=questionnaire_id,
            route_id=fields["route_id"],
            route_name=fields["name"],
            category=fields["category"],
            completion_limit=limit_for(route, category_limits),
            current_completions=0,
            is_active=True,
            version=0,
        )
        db.session.add(entry)
        try:
            db.session.commit()
            created += 1
        except IntegrityError:
            db.session.rollback()
            skipped += 1
            logger.info("Ledger entry %s/%s created concurrently, skipped",
                        questionnaire_id, fields["route_id"])
        existing.add(fields["route_id"])

    if created:
        cache_service.invalidate_snapshot(questionnaire_id)
    logger.info(
        "Initialized route tracking: created=%d skipped=%d",
        created, skipped,
        extra={"questionnaire_id": questionnaire_id},
    )
    return {"created": created, "skipped": skipped}


# ═════════════════════════════════════════════════════════════════════════════
# Reservation & compensation
# ═════════════════════════════════════════════════════════════════════════════

def _is_new_user(questionnaire_id: str, route_id: str, user_id: str | None) -> bool:
    if user_id is None:
        return False
    return db.session.execute(
        select(SubmissionRecord.id).where(
            SubmissionRecord.questionnaire_id == questionnaire_id,
            SubmissionRecord.route_id == route_id,
            SubmissionRecord.user_id == user_id,
        ).limit(1)
    ).first() is None


def try_reserve(questionnaire_id: str, route_id: str, user_id: str | None = None) -> ReservationOutcome:
    """Atomically claim one completion slot on a route.

    Returns:
        RESERVED        counter incremented by exactly one
        QUOTA_EXCEEDED  route full or deactivated; nothing written
        NOT_FOUND       no ledger entry, initialize_tracking() first

    Raises:
        TransientContentionError when LEDGER_MAX_ATTEMPTS conditional
        writes all lost to concurrent writers.
    """
    new_user = _is_new_user(questionnaire_id, route_id, user_id)

    def plan(row):
        if not row.is_active or row.current_completions >= row.completion_limit:
            return _Step(ReservationOutcome.QUOTA_EXCEEDED)
        return _Step(
            ReservationOutcome.RESERVED,
            values={
                "current_completions": QuotaLedgerEntry.current_completions + 1,
                "total_submissions": QuotaLedgerEntry.total_submissions + 1,
                "unique_users": QuotaLedgerEntry.unique_users + (1 if new_user else 0),
            },
            guards=[
                QuotaLedgerEntry.is_active.is_(True),
                QuotaLedgerEntry.current_completions < QuotaLedgerEntry.completion_limit,
            ],
        )

    outcome = _run_conditional(
        _pair_criteria(questionnaire_id, route_id), plan,
        label="reserve", key=(questionnaire_id, route_id),
    )
    if outcome is _MISSING:
        outcome = ReservationOutcome.NOT_FOUND

    log = logger.info if outcome is ReservationOutcome.RESERVED else logger.warning
    log(
        "Reservation %s",
        outcome.value,
        extra={"questionnaire_id": questionnaire_id, "route_id": route_id,
               "user_id": user_id, "outcome": outcome.value},
    )
    return outcome


def release(questionnaire_id: str, route_id: str) -> bool:
    """Compensating decrement for a reservation whose submission failed.

    Returns:
        True if a slot was released, False if the counter was already 0.

    Raises:
        NotFoundError if the pair has no ledger entry.
    """

    def plan(row):
        if row.current_completions <= 0:
            return _Step(False)
        return _Step(
            True,
            values={
                "current_completions": QuotaLedgerEntry.current_completions - 1,
                "total_submissions": case(
                    (QuotaLedgerEntry.total_submissions > 0, QuotaLedgerEntry.total_submissions - 1),
                    else_=0,
                ),
            },
            guards=[QuotaLedgerEntry.current_completions > 0],
        )

    released = _run_conditional(
        _pair_criteria(questionnaire_id, route_id), plan,
        label="release", key=(questionnaire_id, route_id),
    )
    if released is _MISSING:
        raise NotFoundError(resource="QuotaLedgerEntry", resource_id=f"{questionnaire_id}/{route_id}")

    logger.info(
        "Reservation released" if released else "Release skipped, counter already 0",
        extra={"questionnaire_id": questionnaire_id, "route_id": route_id},
    )
    return released


# ═════════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════════

def get_entry(questionnaire_id: str, route_id: str) -> QuotaLedgerEntry | None:
    return QuotaLedgerEntry.query.filter_by(
        questionnaire_id=questionnaire_id, route_id=route_id,
    ).first()


def list_entries(questionnaire_id: str | None = None, active_only: bool = False) -> list[QuotaLedgerEntry]:
    query = QuotaLedgerEntry.query
    if questionnaire_id:
        query = query.filter_by(questionnaire_id=questionnaire_id)
    if active_only:
        query = query.filter_by(is_active=True)
    return query.order_by(QuotaLedgerEntry.questionnaire_id, QuotaLedgerEntry.id).all()


def get_snapshot(questionnaire_id: str, use_cache: bool = True) -> dict:
    """route_id → {current_completions, completion_limit, is_active}.

    With ``use_cache`` the snapshot may be up to LEDGER_SNAPSHOT_TTL
    seconds stale; the submission path reads it uncached.
    """
    if use_cache:
        cached = cache_service.get_cached_snapshot(questionnaire_id)
        if cached is not None:
            return cached

    snapshot = {
        e.route_id: e.snapshot()
        for e in QuotaLedgerEntry.query.filter_by(questionnaire_id=questionnaire_id).all()
    }
    if use_cache:
        cache_service.set_cached_snapshot(
            questionnaire_id, snapshot,
            ttl=int(current_app.config.get("LEDGER_SNAPSHOT_TTL", cache_service.SNAPSHOT_TTL)),
        )
    return snapshot


# ═════════════════════════════════════════════════════════════════════════════
# Admin mutations
# ═════════════════════════════════════════════════════════════════════════════

def _entry_criteria(entry_id: int) -> tuple:
    return (QuotaLedgerEntry.id == entry_id,)


def _require_entry(entry_id: int) -> QuotaLedgerEntry:
    entry = db.session.get(QuotaLedgerEntry, entry_id)
    if entry is None:
        raise NotFoundError(resource="QuotaLedgerEntry", resource_id=entry_id)
    return entry


def update_entry(entry_id: int, completion_limit: int | None = None, is_active: bool | None = None) -> QuotaLedgerEntry:
    """Change an entry's limit and/or active flag.

    The limit may not drop below the completions already granted.
    """
    entry = _require_entry(entry_id)
    key = (entry.questionnaire_id, entry.route_id)

    if completion_limit is not None:
        if not isinstance(completion_limit, int) or isinstance(completion_limit, bool) or completion_limit < 0:
            raise ValidationError(
                "completion_limit must be a non-negative integer",
                details={"completion_limit": completion_limit},
            )

    def plan(row):
        values = {}
        guards = []
        if completion_limit is not None:
            if completion_limit < row.current_completions:
                raise ValidationError(
                    f"completion_limit {completion_limit} is below current completions "
                    f"({row.current_completions})",
                    details={"completion_limit": completion_limit,
                             "current_completions": row.current_completions},
                )
            values["completion_limit"] = completion_limit
            guards.append(QuotaLedgerEntry.current_completions <= completion_limit)
        if is_active is not None:
            values["is_active"] = bool(is_active)
        if not values:
            return _Step(None)
        return _Step(None, values=values, guards=guards)

    try:
        _run_conditional(_entry_criteria(entry_id), plan, label="update", key=key)
    except ValidationError:
        db.session.rollback()
        raise

    logger.info(
        "Ledger entry updated",
        extra={"questionnaire_id": key[0], "route_id": key[1]},
    )
    return _require_entry(entry_id)


def set_active(entry_ids: list[int], active: bool) -> int:
    """Bulk activate/deactivate. Returns the number of entries found."""
    changed = 0
    for entry_id in entry_ids:
        entry = _require_entry(entry_id)
        key = (entry.questionnaire_id, entry.route_id)
        _run_conditional(
            _entry_criteria(entry_id),
            lambda row: _Step(None, values={"is_active": bool(active)}),
            label="activate" if active else "deactivate",
            key=key,
        )
        changed += 1
    return changed


def reset_entries(entry_ids: list[int]) -> int:
    """Zero the counters and metadata of the given entries."""
    reset = 0
    for entry_id in entry_ids:
        entry = _require_entry(entry_id)
        key = (entry.questionnaire_id, entry.route_id)
        _run_conditional(
            _entry_criteria(entry_id),
            lambda row: _Step(None, values={
                "current_completions": 0,
                "total_submissions": 0,
                "unique_users": 0,
            }),
            label="reset",
            key=key,
        )
        reset += 1
    logger.warning("Ledger counters reset for %d entr(y/ies)", reset)
    return reset


# ═════════════════════════════════════════════════════════════════════════════
# Reconciliation of leaked reservations
# ═════════════════════════════════════════════════════════════════════════════

def reconcile(questionnaire_id: str, grace_seconds: int | None = None, dry_run: bool = False) -> dict:
    """Free slots held by reservations that never got a SubmissionRecord.

    A leak happens when a caller reserved a slot and crashed before either
    appending the record or calling release(). For every entry whose
    counter exceeds the number of accepted records for that route, and
    whose ``last_updated`` is older than the grace window (so in-flight
    reservations are left alone), the counter is lowered to the record
    count. Counters are never raised.

    Returns:
        {"questionnaire_id", "dry_run", "checked", "adjusted": [...],
         "skipped_recent": [...], "under_counted": [...]}
    """
    if grace_seconds is None:
        grace_seconds = int(current_app.config.get("RECONCILE_GRACE_SECONDS", 300))
    cutoff = utcnow() - timedelta(seconds=grace_seconds)

    recorded = dict(
        db.session.execute(
            select(SubmissionRecord.route_id, func.count(SubmissionRecord.id))
            .where(
                SubmissionRecord.questionnaire_id == questionnaire_id,
                SubmissionRecord.route_id.isnot(None),
            )
            .group_by(SubmissionRecord.route_id)
        ).all()
    )

    report = {
        "questionnaire_id": questionnaire_id,
        "dry_run": dry_run,
        "checked": 0,
        "adjusted": [],
        "skipped_recent": [],
        "under_counted": [],
    }

    for entry in list_entries(questionnaire_id):
        report["checked"] += 1
        expected = int(recorded.get(entry.route_id, 0))
        current = entry.current_completions
        if current < expected:
            report["under_counted"].append(
                {"route_id": entry.route_id, "current": current, "recorded": expected}
            )
            continue
        if current == expected:
            continue
        if as_utc(entry.last_updated) > cutoff:
            report["skipped_recent"].append({"route_id": entry.route_id, "current": current, "recorded": expected})
            continue
        if dry_run:
            report["adjusted"].append({"route_id": entry.route_id, "from": current, "to": expected})
            continue

        def plan(row, expected=expected):
            if row.current_completions <= expected or as_utc(row.last_updated) > cutoff:
                return _Step(None)
            return _Step(
                {"route_id": row.route_id, "from": row.current_completions, "to": expected},
                values={"current_completions": expected},
            )

        adjusted = _run_conditional(
            _entry_criteria(entry.id), plan,
            label="reconcile", key=(questionnaire_id, entry.route_id),
        )
        if adjusted not in (None, _MISSING):
            report["adjusted"].append(adjusted)

    if report["adjusted"]:
        logger.warning(
            "Reconciliation freed leaked reservations on %d route(s)%s",
            len(report["adjusted"]), " (dry run)" if dry_run else "",
            extra={"questionnaire_id": questionnaire_id},
        )
    return report
