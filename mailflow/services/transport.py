"""Delivery outcomes and the contract every mail transport implements."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence, Union


@dataclass(frozen=True)
class Delivered:
    message_id: str | None = None


@dataclass(frozen=True)
class TransientFailure:
    """Worth retrying: connection problems, timeouts, 4xx replies."""

    reason: str


@dataclass(frozen=True)
class PermanentFailure:
    """Retrying cannot help: rejected recipient, 5xx replies."""

    reason: str


DeliveryResult = Union[Delivered, TransientFailure, PermanentFailure]


class Transport(Protocol):
    async def send(
        self,
        *,
        subject: str,
        html_body: str | None,
        text_body: str | None,
        recipient: str,
        from_email: str | None = None,
        from_name: str | None = None,
        cc: Sequence[str] = (),
        bcc: Sequence[str] = (),
    ) -> DeliveryResult:
        ...

