from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from mailflow.dependencies import get_authorizer, get_clock, get_current_user, get_db
from mailflow.models.user import User as UserModel
from mailflow.schemas.email import (
    EmailQueuedResponse,
    EmailTemplateResponse,
    SendTestEmailRequest,
    TemplateCreate,
    TemplateUpdate,
    TemplateView,
)
from mailflow.services import outbox
from mailflow.services import templates as template_service
from mailflow.services.authorization import Authorizer
from mailflow.services.clock import Clock
from mailflow.services.errors import NotAuthorized


router = APIRouter(prefix="/templates", tags=["templates"])


def require_template_manager(
    current_user: UserModel = Depends(get_current_user),
    authorizer: Authorizer = Depends(get_authorizer),
) -> UserModel:
    if not authorizer.can_manage_templates(current_user):
        raise NotAuthorized("You are not allowed to manage email templates")
    return current_user


# ── Routes ─────────────────────────────────────────────
@router.get("/", response_model=list[TemplateView])
async def list_templates(
    include_inactive: bool = True,
    db: AsyncSession = Depends(get_db),
    current_user: UserModel = Depends(get_current_user),
):
    return await template_service.list_templates(db, include_inactive=include_inactive)


@router.get("/{name}", response_model=EmailTemplateResponse)
async def get_template(
    name: str,
    db: AsyncSession = Depends(get_db),
    current_user: UserModel = Depends(get_current_user),
):
    template = await template_service.get_template(db, name)
    return EmailTemplateResponse(success=True, message="Template found", template=TemplateView.model_validate(template))


@router.post("/", response_model=EmailTemplateResponse, status_code=status.HTTP_201_CREATED)
async def create_template(
    data: TemplateCreate,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    current_user: UserModel = Depends(require_template_manager),
):
    template = await template_service.create_template(
        db,
        name=data.name,
        subject_template=data.subject_template,
        html_body_template=data.html_body_template,
        text_body_template=data.text_body_template,
        default_from_email=data.default_from_email,
        default_from_name=data.default_from_name,
        created_by=current_user.username,
        now=clock.now(),
    )
    return EmailTemplateResponse(success=True, message=f"Template '{template.name}' created", template=TemplateView.model_validate(template))


@router.patch("/{name}", response_model=EmailTemplateResponse)
async def update_template(
    name: str,
    data: TemplateUpdate,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    current_user: UserModel = Depends(require_template_manager),
):
    template = await template_service.update_template(
        db, name, now=clock.now(), **data.model_dump(exclude_unset=True)
    )
    return EmailTemplateResponse(success=True, message=f"Template '{name}' updated", template=TemplateView.model_validate(template))


@router.post("/{name}/test", response_model=EmailQueuedResponse, status_code=status.HTTP_202_ACCEPTED)
async def send_test_email(
    name: str,
    data: SendTestEmailRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    current_user: UserModel = Depends(require_template_manager),
):
    # Unsupplied placeholders show up as [key] so a draft can be previewed
    entry, position = await outbox.enqueue_email(
        db,
        name,
        data.recipient,
        data.variables,
        now=clock.now(),
        requested_by=current_user.user_id,
        fill_missing=True,
        subject_prefix="[TEST] ",
    )
    return EmailQueuedResponse(
        success=True,
        message=f"Test email for '{name}' queued",
        email_id=entry.id,
        queue_position=position,
    )
