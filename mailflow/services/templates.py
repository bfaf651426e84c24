from dataclasses import dataclass
from datetime import datetime

from jinja2 import StrictUndefined, TemplateError, TemplateSyntaxError, Undefined, meta, nodes
from jinja2.sandbox import SandboxedEnvironment
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from mailflow.models.email import EmailTemplate
from mailflow.services.errors import (
    DuplicateName,
    InvalidTemplate,
    InvalidVariable,
    MissingVariable,
    TemplateInactive,
    TemplateNotFound,
)

UPDATABLE_FIELDS = (
    "subject_template",
    "html_body_template",
    "text_body_template",
    "default_from_email",
    "default_from_name",
    "is_active",
)

SOURCE_FIELDS = ("subject_template", "html_body_template", "text_body_template")

HEADER_BREAKS = ("\r", "\n")


class PreviewUndefined(Undefined):
    """Renders an unsupplied placeholder as ``[key]`` for test sends."""

    def __str__(self) -> str:
        return f"[{self._undefined_name}]"


def _environment(*, html: bool, fill_missing: bool) -> SandboxedEnvironment:
    # Templates are edited over the API, so they render sandboxed
    return SandboxedEnvironment(
        autoescape=html,
        undefined=PreviewUndefined if fill_missing else StrictUndefined,
        keep_trailing_newline=True,
    )


ENVIRONMENTS = {
    (html, fill_missing): _environment(html=html, fill_missing=fill_missing)
    for html in (False, True)
    for fill_missing in (False, True)
}


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str | None = None
    text: str | None = None


def _names_in(source: str | None) -> list[str]:
    if not source:
        return []
    ast = ENVIRONMENTS[False, False].parse(source)
    undeclared = meta.find_undeclared_variables(ast)
    # find_undeclared_variables is a set; walk the tree again for appearance order
    return [node.name for node in ast.find_all(nodes.Name) if node.ctx == "load" and node.name in undeclared]


def placeholders(template: EmailTemplate) -> list[str]:
    """Placeholder keys in order of first appearance (subject, html, text)."""
    seen: list[str] = []
    for field in SOURCE_FIELDS:
        for key in _names_in(getattr(template, field)):
            if key not in seen:
                seen.append(key)
    return seen


def validate_sources(name: str, **sources: str | None) -> None:
    """Reject template text that does not compile, and subjects spanning several lines."""
    for field, source in sources.items():
        if source is None:
            continue
        if field == "subject_template" and any(c in source for c in HEADER_BREAKS):
            raise InvalidTemplate(name, "subject must be a single line")
        try:
            ENVIRONMENTS[False, False].parse(source)
        except TemplateSyntaxError as e:
            raise InvalidTemplate(name, f"{field} line {e.lineno}: {e.message}")


def _render_part(template: EmailTemplate, source: str | None, variables: dict[str, str],
                 *, html: bool, fill_missing: bool) -> str | None:
    if source is None:
        return None
    try:
        return ENVIRONMENTS[html, fill_missing].from_string(source).render(variables)
    except TemplateError as e:
        raise InvalidTemplate(template.name, e.message or e.__class__.__name__)


def render(template: EmailTemplate, variables: dict[str, str], *, fill_missing: bool = False) -> RenderedEmail:
    """
    Render subject and bodies. Pure: the same template and variables always
    produce the same output. Values are HTML-escaped in the HTML body only.
    """
    if not template.is_active:
        raise TemplateInactive(template.name)

    if not fill_missing:
        # Report the first missing key regardless of which part references it
        for key in placeholders(template):
            if key not in variables:
                raise MissingVariable(key)

    subject = _render_part(template, template.subject_template, variables, html=False, fill_missing=fill_missing)
    if any(c in subject for c in HEADER_BREAKS):
        # Header injection: the subject has to stay on one line
        for key in _names_in(template.subject_template):
            if any(c in str(variables.get(key, "")) for c in HEADER_BREAKS):
                raise InvalidVariable(key, "must not contain line breaks")
        raise InvalidTemplate(template.name, "rendered subject contains a line break")

    return RenderedEmail(
        subject=subject,
        html=_render_part(template, template.html_body_template, variables, html=True, fill_missing=fill_missing),
        text=_render_part(template, template.text_body_template, variables, html=False, fill_missing=fill_missing),
    )


async def find_template(db: AsyncSession, name: str) -> EmailTemplate | None:
    result = await db.execute(select(EmailTemplate).filter(EmailTemplate.name == name))
    return result.scalars().first()


async def get_template(db: AsyncSession, name: str) -> EmailTemplate:
    template = await find_template(db, name)
    if not template:
        raise TemplateNotFound(name)
    return template


async def list_templates(db: AsyncSession, include_inactive: bool = True) -> list[EmailTemplate]:
    stmt = select(EmailTemplate).order_by(EmailTemplate.name)
    if not include_inactive:
        stmt = stmt.filter(EmailTemplate.is_active == True)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def render_template(
    db: AsyncSession, name: str, variables: dict[str, str], *, fill_missing: bool = False
) -> tuple[EmailTemplate, RenderedEmail]:
    template = await get_template(db, name)
    return template, render(template, variables, fill_missing=fill_missing)


async def create_template(
    db: AsyncSession,
    *,
    name: str,
    subject_template: str,
    now: datetime,
    html_body_template: str | None = None,
    text_body_template: str | None = None,
    default_from_email: str | None = None,
    default_from_name: str | None = None,
    created_by: str | None = None,
) -> EmailTemplate:
    validate_sources(
        name,
        subject_template=subject_template,
        html_body_template=html_body_template,
        text_body_template=text_body_template,
    )
    if await find_template(db, name):
        raise DuplicateName(name)

    template = EmailTemplate(
        name=name,
        subject_template=subject_template,
        html_body_template=html_body_template,
        text_body_template=text_body_template,
        default_from_email=default_from_email,
        default_from_name=default_from_name,
        is_active=True,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    db.add(template)
    try:
        await db.commit()
    except IntegrityError:
        # Lost a race with a concurrent create of the same name
        await db.rollback()
        raise DuplicateName(name)
    await db.refresh(template)
    return template


async def update_template(db: AsyncSession, name: str, *, now: datetime, **fields) -> EmailTemplate:
    """
    Update the supplied fields in place. Outbox entries keep the content they
    were rendered with, so edits only affect future sends.
    """
    template = await get_template(db, name)

    unknown = set(fields) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f"Cannot update template fields: {', '.join(sorted(unknown))}")

    validate_sources(name, **{key: value for key, value in fields.items() if key in SOURCE_FIELDS})
    for key, value in fields.items():
        if value is None and key in ("subject_template", "is_active"):
            continue
        setattr(template, key, value)
    template.updated_at = now

    await db.commit()
    await db.refresh(template)
    return template
