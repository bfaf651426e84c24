from typing import Protocol

from mailflow.models.email import EmailOutbox
from mailflow.models.user import User


class Authorizer(Protocol):
    def can_manage_templates(self, actor: User) -> bool: ...

    def can_cancel(self, actor: User, entry: EmailOutbox) -> bool: ...

    def can_view(self, actor: User, entry: EmailOutbox) -> bool: ...

    def can_view_all(self, actor: User) -> bool: ...


class RoleAuthorizer:
    """Admins may do anything; other users only touch the emails they requested."""

    def can_manage_templates(self, actor: User) -> bool:
        return bool(actor.is_admin)

    def can_cancel(self, actor: User, entry: EmailOutbox) -> bool:
        return bool(actor.is_admin) or entry.requested_by == actor.user_id

    def can_view(self, actor: User, entry: EmailOutbox) -> bool:
        return self.can_cancel(actor, entry)

    def can_view_all(self, actor: User) -> bool:
        return bool(actor.is_admin)
