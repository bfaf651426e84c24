from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from mailflow.dependencies import get_authorizer, get_clock, get_current_user, get_db
from mailflow.models.email import EmailAction
from mailflow.models.user import User as UserModel
from mailflow.schemas.email import (
    EmailCancelResponse,
    EmailHistoryEntry,
    EmailQueuedResponse,
    EmailStatisticsResponse,
    EmailStatusResponse,
    EnqueueEmailRequest,
)
from mailflow.services import outbox
from mailflow.services.authorization import Authorizer
from mailflow.services.clock import Clock
from mailflow.services.errors import NotAuthorized

router = APIRouter(prefix="/emails", tags=["emails"])


@router.post("/", response_model=EmailQueuedResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_email(
    data: EnqueueEmailRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    current_user: UserModel = Depends(get_current_user),
):
    entry, position = await outbox.enqueue_email(
        db,
        data.template_name,
        data.recipient,
        data.variables,
        now=clock.now(),
        requested_by=current_user.user_id,
        cc=data.cc,
        bcc=data.bcc,
        from_email=data.from_email,
        from_name=data.from_name,
        scheduled_for=data.scheduled_for,
        idempotency_key=data.idempotency_key,
    )
    return EmailQueuedResponse(
        success=True,
        message="Email queued",
        email_id=entry.id,
        queue_position=position,
    )


def require_global_view(
    current_user: UserModel = Depends(get_current_user),
    authorizer: Authorizer = Depends(get_authorizer),
) -> UserModel:
    if not authorizer.can_view_all(current_user):
        raise NotAuthorized("You are not allowed to view other users' emails")
    return current_user


# Fixed paths come before /{email_id}
@router.get("/", response_model=list[EmailStatusResponse])
async def list_my_emails(
    status_filter: EmailAction | None = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    current_user: UserModel = Depends(get_current_user),
):
    return await outbox.list_emails(
        db, requested_by=current_user.user_id, status=status_filter, limit=limit, offset=offset
    )


@router.get("/all", response_model=list[EmailStatusResponse])
async def list_all_emails(
    status_filter: EmailAction | None = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    current_user: UserModel = Depends(require_global_view),
):
    return await outbox.list_emails(db, status=status_filter, limit=limit, offset=offset)


@router.get("/stats", response_model=EmailStatisticsResponse)
async def get_my_statistics(
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    current_user: UserModel = Depends(get_current_user),
):
    stats = await outbox.email_statistics(db, now=clock.now(), requested_by=current_user.user_id)
    return EmailStatisticsResponse.model_validate(stats)


@router.get("/stats/system", response_model=EmailStatisticsResponse)
async def get_system_statistics(
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    current_user: UserModel = Depends(require_global_view),
):
    stats = await outbox.email_statistics(db, now=clock.now())
    return EmailStatisticsResponse.model_validate(stats)


@router.get("/{email_id}", response_model=EmailStatusResponse)
async def get_email(
    email_id: int,
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
    current_user: UserModel = Depends(get_current_user),
):
    entry = await outbox.get_email(db, email_id)
    if not authorizer.can_view(current_user, entry):
        raise NotAuthorized(f"You are not allowed to view email {email_id}")
    return entry


@router.post("/{email_id}/cancel", response_model=EmailCancelResponse)
async def cancel_email(
    email_id: int,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    authorizer: Authorizer = Depends(get_authorizer),
    current_user: UserModel = Depends(get_current_user),
):
    entry = await outbox.get_email(db, email_id)
    if not authorizer.can_cancel(current_user, entry):
        raise NotAuthorized(f"You are not allowed to cancel email {email_id}")

    _, changed = await outbox.cancel_email(db, email_id, now=clock.now())
    message = "Email cancelled" if changed else "Email was already cancelled"
    return EmailCancelResponse(success=True, message=message)


@router.get("/{email_id}/history", response_model=list[EmailHistoryEntry])
async def get_outbox_history(
    email_id: int,
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
    current_user: UserModel = Depends(get_current_user),
):
    entry = await outbox.get_email(db, email_id)
    if not authorizer.can_view(current_user, entry):
        raise NotAuthorized(f"You are not allowed to view email {email_id}")
    return await outbox.get_outbox_history(db, email_id)
