"""Outbox state machine: enqueue, claim, attempt completion and cancellation.

Every status change is a compare-and-set on ``(id, version)`` that bumps the
version and adds the matching ``EmailLog`` row in the same transaction, so the
log can never fall behind the status it describes.
"""
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import and_, delete, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from mailflow.models.email import EmailAction, EmailLog, EmailOutbox
from mailflow.services import audit, templates
from mailflow.services.backoff import BackoffPolicy, schedule_retry
from mailflow.services.errors import (
    AlreadyTerminal,
    CancellationConflict,
    ClaimConflict,
    EmailNotFound,
    InvalidTransition,
)
from mailflow.services.transport import Delivered, DeliveryResult, PermanentFailure

logger = logging.getLogger(__name__)

Q = EmailAction

TRANSITIONS: dict[EmailAction, frozenset[EmailAction]] = {
    Q.QUEUED: frozenset({Q.PROCESSING, Q.CANCELLED}),
    Q.PROCESSING: frozenset({Q.SENT, Q.FAILED, Q.RETRIED, Q.CANCELLED}),
    Q.RETRIED: frozenset({Q.PROCESSING, Q.CANCELLED}),
    Q.SENT: frozenset(),
    Q.FAILED: frozenset(),
    Q.CANCELLED: frozenset(),
}

TERMINAL = frozenset(status for status, targets in TRANSITIONS.items() if not targets)

CANCEL_RETRIES = 5
PURGE_BATCH = 500


def ensure_transition(current: EmailAction, target: EmailAction) -> None:
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(current, target)


def join_addresses(addresses) -> str | None:
    return ", ".join(addresses) if addresses else None


def split_addresses(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class ClaimedEmail:
    """Snapshot of an entry a worker holds in Processing."""

    id: int
    version: int
    attempts: int
    worker_id: str
    to_email: str
    subject: str
    html_body: str | None
    text_body: str | None
    from_email: str | None
    from_name: str | None
    cc: tuple[str, ...] = ()
    bcc: tuple[str, ...] = ()


async def _compare_and_set(
    db: AsyncSession,
    entry_id: int,
    version: int,
    current: EmailAction,
    target: EmailAction,
    *,
    now: datetime,
    details: str | None = None,
    **values,
) -> bool:
    """Move one entry from ``current`` to ``target`` if nobody touched it since ``version``."""
    ensure_transition(current, target)
    result = await db.execute(
        update(EmailOutbox)
        .where(
            EmailOutbox.id == entry_id,
            EmailOutbox.version == version,
            EmailOutbox.status == current,
        )
        .values(status=target, version=version + 1, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    await audit.append_log(db, entry_id, target, details, now=now)
    return True


async def _reload(db: AsyncSession, email_id: int) -> EmailOutbox | None:
    return await db.get(EmailOutbox, email_id, populate_existing=True)


async def get_email(db: AsyncSession, email_id: int) -> EmailOutbox:
    entry = await _reload(db, email_id)
    if not entry:
        raise EmailNotFound(email_id)
    return entry


async def get_outbox_history(db: AsyncSession, email_id: int) -> list[EmailLog]:
    await get_email(db, email_id)
    return await audit.get_history(db, email_id)


async def list_emails(
    db: AsyncSession,
    *,
    requested_by: int | None = None,
    status: EmailAction | None = None,
    limit: int = 20,
    offset: int = 0,
) -> list[EmailOutbox]:
    """Newest first. ``requested_by=None`` lists every entry."""
    stmt = select(EmailOutbox).order_by(EmailOutbox.created_at.desc(), EmailOutbox.id.desc())
    if requested_by is not None:
        stmt = stmt.filter(EmailOutbox.requested_by == requested_by)
    if status is not None:
        stmt = stmt.filter(EmailOutbox.status == status)
    result = await db.execute(stmt.offset(offset).limit(limit))
    return list(result.scalars().all())


@dataclass(frozen=True)
class EmailStatistics:
    total: int
    by_status: dict[str, int]
    sent_last_24_hours: int
    sent_last_7_days: int
    sent_last_30_days: int
    average_delivery_seconds: float | None
    success_rate: float


async def email_statistics(
    db: AsyncSession, *, now: datetime, requested_by: int | None = None
) -> EmailStatistics:
    """Counts per status, recent deliveries and the Sent share of finished attempts."""
    scope = [EmailOutbox.requested_by == requested_by] if requested_by is not None else []

    result = await db.execute(
        select(EmailOutbox.status, func.count(EmailOutbox.id)).filter(*scope).group_by(EmailOutbox.status)
    )
    by_status = {status.value: 0 for status in EmailAction}
    for status, count in result.all():
        by_status[status.value] = count

    async def sent_since(delta: timedelta) -> int:
        result = await db.execute(
            select(func.count(EmailOutbox.id)).filter(
                *scope, EmailOutbox.status == Q.SENT, EmailOutbox.sent_at >= now - delta
            )
        )
        return result.scalar_one()

    result = await db.execute(
        select(EmailOutbox.created_at, EmailOutbox.sent_at).filter(
            *scope, EmailOutbox.status == Q.SENT, EmailOutbox.sent_at.is_not(None)
        )
    )
    durations = [(sent_at - created_at).total_seconds() for created_at, sent_at in result.all()]

    sent, failed = by_status[Q.SENT.value], by_status[Q.FAILED.value]
    return EmailStatistics(
        total=sum(by_status.values()),
        by_status=by_status,
        sent_last_24_hours=await sent_since(timedelta(hours=24)),
        sent_last_7_days=await sent_since(timedelta(days=7)),
        sent_last_30_days=await sent_since(timedelta(days=30)),
        average_delivery_seconds=sum(durations) / len(durations) if durations else None,
        success_rate=round(sent / (sent + failed) * 100, 2) if sent + failed else 0.0,
    )


async def queue_position(db: AsyncSession, entry: EmailOutbox) -> int | None:
    """1-based rank among Queued entries by (created_at, id); None once it left the queue."""
    if entry.status != Q.QUEUED:
        return None
    result = await db.execute(
        select(func.count(EmailOutbox.id)).filter(
            EmailOutbox.status == Q.QUEUED,
            or_(
                EmailOutbox.created_at < entry.created_at,
                and_(EmailOutbox.created_at == entry.created_at, EmailOutbox.id < entry.id),
            ),
        )
    )
    return result.scalar_one() + 1


async def _find_by_idempotency_key(db: AsyncSession, key: str) -> EmailOutbox | None:
    result = await db.execute(select(EmailOutbox).filter(EmailOutbox.idempotency_key == key))
    return result.scalars().first()


async def enqueue_email(
    db: AsyncSession,
    template_name: str,
    recipient: str,
    variables: dict[str, str],
    *,
    now: datetime,
    requested_by: int | None = None,
    cc: list[str] | None = None,
    bcc: list[str] | None = None,
    from_email: str | None = None,
    from_name: str | None = None,
    scheduled_for: datetime | None = None,
    idempotency_key: str | None = None,
    fill_missing: bool = False,
    subject_prefix: str = "",
) -> tuple[EmailOutbox, int | None]:
    """
    Render the template and queue the result. Render errors propagate before
    anything is written, so a failed enqueue leaves no row and no log.
    """
    if idempotency_key:
        existing = await _find_by_idempotency_key(db, idempotency_key)
        if existing:
            return existing, await queue_position(db, existing)

    template, rendered = await templates.render_template(
        db, template_name, variables, fill_missing=fill_missing
    )

    entry = EmailOutbox(
        template_id=template.id,
        template_name=template.name,
        to_email=recipient,
        cc_email=join_addresses(cc),
        bcc_email=join_addresses(bcc),
        from_email=from_email or template.default_from_email,
        from_name=from_name or template.default_from_name,
        subject=f"{subject_prefix}{rendered.subject}",
        html_body=rendered.html,
        text_body=rendered.text,
        status=Q.QUEUED,
        attempts=0,
        next_attempt_at=scheduled_for or now,
        version=0,
        requested_by=requested_by,
        idempotency_key=idempotency_key,
        created_at=now,
        updated_at=now,
    )
    db.add(entry)
    try:
        await db.flush()
    except IntegrityError:
        if not idempotency_key:
            raise
        # A concurrent request with the same key inserted first
        await db.rollback()
        existing = await _find_by_idempotency_key(db, idempotency_key)
        if existing is None:
            raise
        logger.info("[QUEUE] Idempotency key %r already used by email %s", idempotency_key, existing.id)
        return existing, await queue_position(db, existing)

    await audit.append_log(db, entry.id, Q.QUEUED, now=now)
    await db.commit()

    position = await queue_position(db, entry)
    logger.info("[QUEUE] Enqueued email %s (%s) for %s at position %s",
                entry.id, template.name, recipient, position)
    return entry, position


async def cancel_email(db: AsyncSession, email_id: int, *, now: datetime) -> tuple[EmailOutbox, bool]:
    """
    Cancel a Queued or Retried entry. Returns the entry and whether this call
    changed it; cancelling an already cancelled entry is a no-op.
    """
    for _ in range(CANCEL_RETRIES):
        entry = await get_email(db, email_id)
        status = entry.status

        if status == Q.CANCELLED:
            return entry, False
        if status in TERMINAL:
            raise AlreadyTerminal(email_id, status)
        if status == Q.PROCESSING:
            # Let the in-flight attempt finish
            raise CancellationConflict(email_id)

        if await _compare_and_set(
            db, entry.id, entry.version, status, Q.CANCELLED, now=now, details="Cancelled by request",
        ):
            await db.commit()
            logger.info("[QUEUE] Cancelled email %s", email_id)
            return await get_email(db, email_id), True

        # A worker claimed it in between; look again
        await db.rollback()

    raise CancellationConflict(email_id)


async def purge_terminal_emails(db: AsyncSession, *, older_than: datetime) -> int:
    """
    Delete Sent, Failed and Cancelled entries last changed before ``older_than``,
    together with their whole log. Log rows of live entries are never touched.
    """
    purged = 0
    while True:
        result = await db.execute(
            select(EmailOutbox.id)
            .filter(EmailOutbox.status.in_(list(TERMINAL)), EmailOutbox.updated_at < older_than)
            .limit(PURGE_BATCH)
        )
        ids = list(result.scalars().all())
        if not ids:
            break

        await db.execute(
            delete(EmailLog)
            .where(EmailLog.email_outbox_id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        await db.execute(
            delete(EmailOutbox)
            .where(EmailOutbox.id.in_(ids), EmailOutbox.status.in_(list(TERMINAL)))
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        purged += len(ids)

    logger.info("[QUEUE] Purged %s finished emails last updated before %s", purged, older_than.isoformat())
    return purged


@dataclass(frozen=True)
class _Candidate:
    id: int
    status: EmailAction
    version: int
    attempts: int
    claimed_by: str | None
    to_email: str
    cc_email: str | None
    bcc_email: str | None
    subject: str
    html_body: str | None
    text_body: str | None
    from_email: str | None
    from_name: str | None


async def _eligible(
    db: AsyncSession, now: datetime, limit: int, exclude: set[int] | None = None
) -> list[_Candidate]:
    # Plain snapshots: a rollback after a lost claim expires ORM instances
    stmt = (
        select(
            EmailOutbox.id,
            EmailOutbox.status,
            EmailOutbox.version,
            EmailOutbox.attempts,
            EmailOutbox.claimed_by,
            EmailOutbox.to_email,
            EmailOutbox.cc_email,
            EmailOutbox.bcc_email,
            EmailOutbox.subject,
            EmailOutbox.html_body,
            EmailOutbox.text_body,
            EmailOutbox.from_email,
            EmailOutbox.from_name,
        )
        .filter(
            or_(
                and_(
                    EmailOutbox.status.in_([Q.QUEUED, Q.RETRIED]),
                    EmailOutbox.next_attempt_at <= now,
                ),
                and_(
                    EmailOutbox.status == Q.PROCESSING,
                    EmailOutbox.lease_expires_at <= now,
                ),
            )
        )
        .order_by(EmailOutbox.created_at, EmailOutbox.id)
        .limit(limit)
    )
    if exclude:
        stmt = stmt.filter(EmailOutbox.id.notin_(list(exclude)))
    result = await db.execute(stmt)
    return [_Candidate(*row) for row in result.all()]


async def _claim(
    db: AsyncSession,
    entry: _Candidate,
    worker_id: str,
    *,
    now: datetime,
    lease_seconds: float,
    policy: BackoffPolicy,
) -> ClaimedEmail | None:
    status, version, attempts = entry.status, entry.version, entry.attempts

    if status == Q.PROCESSING:
        # The previous holder's lease ran out: count its attempt as a transient failure
        attempts += 1
        reason = f"Lease held by {entry.claimed_by or 'unknown worker'} expired"
        if attempts >= policy.max_attempts:
            if not await _compare_and_set(
                db, entry.id, version, Q.PROCESSING, Q.FAILED, now=now,
                details=f"Max attempts exceeded ({attempts}/{policy.max_attempts}): {reason}",
                attempts=attempts, lease_expires_at=None, claimed_by=None, last_error=reason,
            ):
                raise ClaimConflict(entry.id)
            logger.error("[WORKER %s] Email %s failed permanently: %s", worker_id, entry.id, reason)
            return None

        if not await _compare_and_set(
            db, entry.id, version, Q.PROCESSING, Q.RETRIED, now=now, details=reason,
            attempts=attempts, next_attempt_at=now, lease_expires_at=None, claimed_by=None,
            last_error=reason,
        ):
            raise ClaimConflict(entry.id)
        logger.warning("[WORKER %s] Reclaiming email %s: %s", worker_id, entry.id, reason)
        status, version = Q.RETRIED, version + 1

    if not await _compare_and_set(
        db, entry.id, version, status, Q.PROCESSING, now=now,
        details=f"Claimed by {worker_id}",
        claimed_by=worker_id, lease_expires_at=now + timedelta(seconds=lease_seconds),
    ):
        raise ClaimConflict(entry.id)

    return ClaimedEmail(
        id=entry.id,
        version=version + 1,
        attempts=attempts,
        worker_id=worker_id,
        to_email=entry.to_email,
        subject=entry.subject,
        html_body=entry.html_body,
        text_body=entry.text_body,
        from_email=entry.from_email,
        from_name=entry.from_name,
        cc=split_addresses(entry.cc_email),
        bcc=split_addresses(entry.bcc_email),
    )


async def claim_next(
    db: AsyncSession,
    worker_id: str,
    *,
    now: datetime,
    lease_seconds: float,
    policy: BackoffPolicy,
    batch_size: int = 10,
) -> ClaimedEmail | None:
    """
    Claim the oldest eligible entry. Losing a race for one candidate moves on
    to the next, page after page; the caller never sees the conflict.
    """
    passed: set[int] = set()
    while True:
        candidates = await _eligible(db, now, batch_size, exclude=passed)
        if not candidates:
            return None

        for candidate in candidates:
            passed.add(candidate.id)
            try:
                claimed = await _claim(
                    db, candidate, worker_id, now=now, lease_seconds=lease_seconds, policy=policy
                )
            except ClaimConflict:
                await db.rollback()
                logger.debug("[WORKER %s] Lost claim on email %s, trying next", worker_id, candidate.id)
                continue

            await db.commit()
            if claimed is not None:
                return claimed


async def complete_attempt(
    db: AsyncSession,
    claim: ClaimedEmail,
    outcome: DeliveryResult,
    *,
    now: datetime,
    policy: BackoffPolicy,
    rng: random.Random | None = None,
) -> EmailAction | None:
    """
    Record the result of one delivery attempt. Returns the new status, or None
    if the claim was lost (lease expired and another worker took over).
    """
    attempts = claim.attempts + 1
    values = dict(attempts=attempts, lease_expires_at=None, claimed_by=None)

    if isinstance(outcome, Delivered):
        target = Q.SENT
        details = f"Delivered to {claim.to_email}"
        if outcome.message_id:
            details += f" ({outcome.message_id})"
        values.update(sent_at=now, last_error=None)
    elif isinstance(outcome, PermanentFailure):
        target = Q.FAILED
        details = f"Permanent failure: {outcome.reason}"
        values.update(last_error=outcome.reason)
    else:
        decision = schedule_retry(attempts, policy, now, rng)
        values.update(last_error=outcome.reason)
        if decision.terminal:
            target = Q.FAILED
            details = f"Max attempts exceeded ({attempts}/{policy.max_attempts}): {outcome.reason}"
        else:
            target = Q.RETRIED
            details = (f"Transient failure: {outcome.reason}; "
                       f"next attempt at {decision.next_attempt_at.isoformat()}")
            values.update(next_attempt_at=decision.next_attempt_at)

    if not await _compare_and_set(
        db, claim.id, claim.version, Q.PROCESSING, target, now=now, details=details, **values
    ):
        await db.rollback()
        logger.warning("[WORKER %s] Lost claim on email %s before recording %s",
                       claim.worker_id, claim.id, target.value)
        return None

    await db.commit()
    if target == Q.SENT:
        logger.info("[EMAIL SENT] Email %s to %s: %s", claim.id, claim.to_email, claim.subject)
    elif target == Q.RETRIED:
        logger.warning("[EMAIL FAILED] Email %s attempt %s: %s", claim.id, attempts, details)
    else:
        logger.error("[EMAIL FAILED] Email %s: %s", claim.id, details)
    return target
