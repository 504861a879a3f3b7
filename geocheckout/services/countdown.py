"""Per-session auto-checkout countdown lifecycle.

States per session: NONE -> PENDING -> CANCELLED (back to NONE) or EXECUTED.
The pending_countdowns table is the only source of truth. A session has at most
one PENDING row, enforced by the partial unique index
``uq_pending_countdowns_session_pending``; every write below is either an
insert guarded by that index or an update conditioned on ``status = PENDING``.

``ends_at`` is computed once on insert and never written again. Recovery
always cancels outright, so the next violation starts a fresh countdown for
the full configured duration.

Expiry is not handled here; see ``geocheckout.services.auto_checkout``.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from geocheckout.errors import StorageTransientError
from geocheckout.models import (
    AttendanceSession,
    CancelReason,
    Classification,
    CountdownReason,
    CountdownStatus,
    PendingCountdown,
)
from geocheckout.services.clock import normalize_ts
from geocheckout.services.tenant_config import TenantConfig

logger = logging.getLogger("geocheckout.countdown")


class CountdownState(str, enum.Enum):
    NONE = "NONE"
    PENDING = "PENDING"


class TransitionAction(str, enum.Enum):
    NOOP = "NOOP"
    CREATED = "CREATED"
    ADOPTED = "ADOPTED"
    KEPT = "KEPT"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True, slots=True)
class CountdownView:
    countdown_id: int
    reason: CountdownReason
    started_at: datetime
    ends_at: datetime

    @classmethod
    def from_row(cls, countdown: PendingCountdown) -> CountdownView:
        return cls(
            countdown_id=countdown.id,
            reason=countdown.reason,
            started_at=normalize_ts(countdown.started_at),
            ends_at=normalize_ts(countdown.ends_at),
        )


@dataclass(frozen=True, slots=True)
class CountdownTransition:
    action: TransitionAction
    state: CountdownState
    countdown: PendingCountdown | None = None


def violation_reason(classification: Classification) -> CountdownReason | None:
    if classification == Classification.OK:
        return None
    if classification == Classification.LOCATION_DISABLED:
        return CountdownReason.LOCATION_DISABLED
    if classification == Classification.OUT_OF_BRANCH:
        return CountdownReason.OUT_OF_BRANCH
    raise ValueError(f"Unknown classification: {classification!r}")


def countdown_ends_at(started_at: datetime, config: TenantConfig) -> datetime:
    # Restart-always: a new countdown never inherits time from a cancelled one.
    return normalize_ts(started_at) + config.countdown_duration


def get_pending(db: Session, session_id: int) -> PendingCountdown | None:
    return db.scalar(
        select(PendingCountdown)
        .where(
            PendingCountdown.session_id == session_id,
            PendingCountdown.status == CountdownStatus.PENDING,
        )
        .execution_options(populate_existing=True)
    )


def cancel_pending(
    db: Session,
    *,
    session_id: int,
    cancel_reason: CancelReason,
    now_utc: datetime | None = None,
    commit: bool = True,
) -> bool:
    result = db.execute(
        update(PendingCountdown)
        .where(
            PendingCountdown.session_id == session_id,
            PendingCountdown.status == CountdownStatus.PENDING,
        )
        .values(
            status=CountdownStatus.CANCELLED,
            cancel_reason=cancel_reason,
            cancelled_at=normalize_ts(now_utc),
        )
    )
    if commit:
        db.commit()
    cancelled = result.rowcount > 0
    if cancelled:
        logger.info(
            "countdown_cancelled",
            extra={"session_id": session_id, "cancel_reason": cancel_reason.value},
        )
    return cancelled


def cancel_countdown(
    db: Session,
    *,
    countdown_id: int,
    cancel_reason: CancelReason,
    now_utc: datetime | None = None,
    commit: bool = True,
) -> bool:
    result = db.execute(
        update(PendingCountdown)
        .where(
            PendingCountdown.id == countdown_id,
            PendingCountdown.status == CountdownStatus.PENDING,
        )
        .values(
            status=CountdownStatus.CANCELLED,
            cancel_reason=cancel_reason,
            cancelled_at=normalize_ts(now_utc),
        )
    )
    if commit:
        db.commit()
    cancelled = result.rowcount > 0
    if cancelled:
        logger.info(
            "countdown_cancelled",
            extra={"countdown_id": countdown_id, "cancel_reason": cancel_reason.value},
        )
    return cancelled


def start_countdown(
    db: Session,
    *,
    session: AttendanceSession,
    reason: CountdownReason,
    config: TenantConfig,
    now_utc: datetime,
) -> CountdownTransition:
    countdown = PendingCountdown(
        tenant_id=session.tenant_id,
        employee_id=session.employee_id,
        session_id=session.id,
        reason=reason,
        started_at=now_utc,
        ends_at=countdown_ends_at(now_utc, config),
        status=CountdownStatus.PENDING,
    )
    db.add(countdown)
    try:
        db.commit()
    except IntegrityError:
        # Another worker inserted the PENDING row first; adopt it.
        db.rollback()
        winner = get_pending(db, session.id)
        if winner is None:
            # The winner was already cancelled by a recovery heartbeat.
            return CountdownTransition(action=TransitionAction.NOOP, state=CountdownState.NONE)
        logger.info(
            "countdown_adopted",
            extra={"session_id": session.id, "countdown_id": winner.id},
        )
        return CountdownTransition(
            action=TransitionAction.ADOPTED,
            state=CountdownState.PENDING,
            countdown=winner,
        )

    logger.info(
        "countdown_created",
        extra={
            "tenant_id": session.tenant_id,
            "employee_id": session.employee_id,
            "session_id": session.id,
            "countdown_id": countdown.id,
            "reason": reason.value,
            "ends_at": countdown.ends_at.isoformat(),
        },
    )
    return CountdownTransition(
        action=TransitionAction.CREATED,
        state=CountdownState.PENDING,
        countdown=countdown,
    )


def apply_classification(
    db: Session,
    *,
    session: AttendanceSession,
    classification: Classification,
    config: TenantConfig,
    now_utc: datetime | None = None,
) -> CountdownTransition:
    now_utc = normalize_ts(now_utc)
    reason = violation_reason(classification)
    try:
        if reason is None:
            if cancel_pending(
                db,
                session_id=session.id,
                cancel_reason=CancelReason.RECOVERED,
                now_utc=now_utc,
            ):
                return CountdownTransition(action=TransitionAction.CANCELLED, state=CountdownState.NONE)
            return CountdownTransition(action=TransitionAction.NOOP, state=CountdownState.NONE)

        existing = get_pending(db, session.id)
        if existing is not None:
            # A reason change does not restart or extend the running clock.
            return CountdownTransition(
                action=TransitionAction.KEPT,
                state=CountdownState.PENDING,
                countdown=existing,
            )
        return start_countdown(db, session=session, reason=reason, config=config, now_utc=now_utc)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception(
            "countdown_storage_error",
            extra={"session_id": session.id, "classification": classification.value},
        )
        raise StorageTransientError() from exc
