from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from mailflow.models.email import EmailAction, EmailLog


async def append_log(
    db: AsyncSession,
    outbox_id: int,
    action: EmailAction,
    details: str | None = None,
    *,
    now: datetime,
) -> EmailLog:
    """
    Add one immutable log row to the caller's transaction.
    Never commits: the transition that produced it commits both together.
    """
    entry = EmailLog(email_outbox_id=outbox_id, action=action, details=details, created_at=now)
    db.add(entry)
    return entry


async def get_history(db: AsyncSession, outbox_id: int) -> list[EmailLog]:
    result = await db.execute(
        select(EmailLog)
        .filter(EmailLog.email_outbox_id == outbox_id)
        .order_by(EmailLog.created_at, EmailLog.id)
    )
    return list(result.scalars().all())
