"""Domain errors raised by the template store and the outbox.

Each error carries a stable ``code`` and the HTTP status the API layer answers
with. The dispatcher never lets these reach the original caller: transport and
claim problems are recorded in the email log instead.
"""
from __future__ import annotations


class EmailError(Exception):
    code = "EMAIL_ERROR"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class DuplicateName(EmailError):
    code = "DUPLICATE_NAME"
    status_code = 409

    def __init__(self, name: str):
        super().__init__(f"Template '{name}' already exists")
        self.name = name


class TemplateNotFound(EmailError):
    code = "TEMPLATE_NOT_FOUND"
    status_code = 404

    def __init__(self, name: str):
        super().__init__(f"Template '{name}' not found")
        self.name = name


class TemplateInactive(EmailError):
    code = "TEMPLATE_INACTIVE"
    status_code = 422

    def __init__(self, name: str):
        super().__init__(f"Template '{name}' is inactive")
        self.name = name


class InvalidTemplate(EmailError):
    code = "INVALID_TEMPLATE"
    status_code = 422

    def __init__(self, name: str, reason: str):
        super().__init__(f"Template '{name}' is invalid: {reason}")
        self.name = name
        self.reason = reason


class MissingVariable(EmailError):
    code = "MISSING_VARIABLE"
    status_code = 422

    def __init__(self, key: str):
        super().__init__(f"No value supplied for placeholder '{key}'")
        self.key = key


class InvalidVariable(EmailError):
    code = "INVALID_VARIABLE"
    status_code = 422

    def __init__(self, key: str, reason: str):
        super().__init__(f"Value for placeholder '{key}' {reason}")
        self.key = key
        self.reason = reason


class EmailNotFound(EmailError):
    code = "EMAIL_NOT_FOUND"
    status_code = 404

    def __init__(self, email_id: int):
        super().__init__(f"Email {email_id} not found")
        self.email_id = email_id


class InvalidTransition(EmailError):
    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, current, target):
        super().__init__(f"Cannot move email from {current.value} to {target.value}")
        self.current = current
        self.target = target


class CancellationConflict(EmailError):
    code = "CANCELLATION_CONFLICT"
    status_code = 409

    def __init__(self, email_id: int):
        super().__init__(f"Email {email_id} is being processed and cannot be cancelled")
        self.email_id = email_id


class AlreadyTerminal(EmailError):
    code = "ALREADY_TERMINAL"
    status_code = 409

    def __init__(self, email_id: int, status):
        super().__init__(f"Email {email_id} is already {status.value.lower()}")
        self.email_id = email_id
        self.status = status


class NotAuthorized(EmailError):
    code = "NOT_AUTHORIZED"
    status_code = 403


class ClaimConflict(Exception):
    """Another worker changed the entry between selection and claim."""
