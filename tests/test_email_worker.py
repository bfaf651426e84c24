import asyncio
import random

import pytest

from mailflow.models.email import EmailAction
from mailflow.services import outbox
from mailflow.services.email_worker import EmailDispatcher
from mailflow.services.transport import Delivered, PermanentFailure, TransientFailure
from tests.conftest import ScriptedTransport, assert_valid_walk, logged_actions

VARS = {"userName": "Alice", "product": "Mailflow"}


class SlowTransport:
    def __init__(self, delay):
        self.delay = delay

    async def send(self, **message):
        await asyncio.sleep(self.delay)
        return Delivered()


def make_dispatcher(session_factory, transport, clock, policy, **kwargs):
    options = dict(
        workers=1,
        poll_interval=0.01,
        lease_seconds=60,
        claim_timeout=5,
        transport_timeout=5,
        commit_timeout=5,
        rng=random.Random(0),
    )
    options.update(kwargs)
    return EmailDispatcher(session_factory, transport, clock=clock, policy=policy, **options)


async def enqueue(db, clock, recipient="alice@x.com"):
    entry, _ = await outbox.enqueue_email(db, "welcome_email", recipient, VARS, now=clock.now())
    return entry


async def test_run_once_with_empty_outbox(session_factory, clock, policy):
    dispatcher = make_dispatcher(session_factory, ScriptedTransport(), clock, policy)
    assert await dispatcher.run_once("w1") is False


async def test_delivers_rendered_snapshot(db, clock, policy, session_factory, welcome_template):
    entry = await enqueue(db, clock)
    transport = ScriptedTransport()

    assert await make_dispatcher(session_factory, transport, clock, policy).drain() == 1

    [sent] = transport.sent
    assert sent["recipient"] == "alice@x.com"
    assert sent["subject"] == "Welcome, Alice!"
    assert sent["html_body"] == "<p>Hello Alice, thanks for joining Mailflow.</p>"
    assert sent["from_email"] == "hello@mailflow.test"
    assert (await outbox.get_email(db, entry.id)).status == EmailAction.SENT


async def test_two_transient_failures_then_success(db, clock, policy, session_factory, welcome_template):
    entry = await enqueue(db, clock)
    transport = ScriptedTransport(TransientFailure("421 try later"), TransientFailure("421 try later"))
    dispatcher = make_dispatcher(session_factory, transport, clock, policy)

    assert await dispatcher.drain() == 1
    # Backed off: nothing is eligible until the clock moves
    assert await dispatcher.drain() == 0
    clock.advance(10)
    assert await dispatcher.drain() == 1
    clock.advance(20)
    assert await dispatcher.drain() == 1

    final = await outbox.get_email(db, entry.id)
    assert final.status == EmailAction.SENT
    assert final.attempts == 3
    assert len(transport.sent) == 3
    assert await logged_actions(session_factory, entry.id) == [
        EmailAction.QUEUED, EmailAction.PROCESSING, EmailAction.RETRIED,
        EmailAction.PROCESSING, EmailAction.RETRIED, EmailAction.PROCESSING, EmailAction.SENT,
    ]


async def test_permanent_failure_on_first_attempt(db, clock, policy, session_factory, welcome_template):
    entry = await enqueue(db, clock)
    transport = ScriptedTransport(PermanentFailure("550 mailbox unavailable"))

    await make_dispatcher(session_factory, transport, clock, policy).drain()

    final = await outbox.get_email(db, entry.id)
    assert (final.status, final.attempts) == (EmailAction.FAILED, 1)
    assert final.last_error == "550 mailbox unavailable"
    assert await logged_actions(session_factory, entry.id) == [
        EmailAction.QUEUED, EmailAction.PROCESSING, EmailAction.FAILED,
    ]


async def test_transport_exception_is_treated_as_transient(db, clock, policy, session_factory, welcome_template):
    entry = await enqueue(db, clock)
    transport = ScriptedTransport(ConnectionResetError("peer went away"))

    await make_dispatcher(session_factory, transport, clock, policy).drain()

    retried = await outbox.get_email(db, entry.id)
    assert retried.status == EmailAction.RETRIED
    assert retried.last_error == "peer went away"


async def test_transport_timeout_is_treated_as_transient(db, clock, policy, session_factory, welcome_template):
    entry = await enqueue(db, clock)
    dispatcher = make_dispatcher(session_factory, SlowTransport(1), clock, policy, transport_timeout=0.05)

    assert await dispatcher.run_once("w1") is True

    retried = await outbox.get_email(db, entry.id)
    assert retried.status == EmailAction.RETRIED
    assert retried.attempts == 1
    assert retried.last_error == "Transport timed out after 0.05s"


async def test_attempts_never_exceed_max(db, clock, policy, session_factory, welcome_template):
    entry = await enqueue(db, clock)
    transport = ScriptedTransport(*[TransientFailure("busy")] * 10)
    dispatcher = make_dispatcher(session_factory, transport, clock, policy)

    for _ in range(10):
        await dispatcher.drain()
        clock.advance(policy.cap_seconds)

    final = await outbox.get_email(db, entry.id)
    assert final.status == EmailAction.FAILED
    assert final.attempts == policy.max_attempts
    assert len(transport.sent) == policy.max_attempts


async def test_each_entry_sent_once_across_dispatchers(db, clock, policy, session_factory, welcome_template):
    ids = []
    for i in range(6):
        ids.append((await enqueue(db, clock, f"user{i}@x.com")).id)
        clock.advance(1)

    transport = ScriptedTransport()
    first = make_dispatcher(session_factory, transport, clock, policy)
    second = make_dispatcher(session_factory, transport, clock, policy)
    for _ in range(3):
        await first.run_once("first")
        await second.run_once("second")

    recipients = [sent["recipient"] for sent in transport.sent]
    assert sorted(recipients) == sorted(f"user{i}@x.com" for i in range(6))
    for email_id in ids:
        actions = await logged_actions(session_factory, email_id)
        assert actions.count(EmailAction.PROCESSING) == 1
        assert_valid_walk(actions)


async def test_worker_pool_start_and_stop(db, clock, policy, session_factory, welcome_template):
    entry = await enqueue(db, clock)
    dispatcher = make_dispatcher(session_factory, ScriptedTransport(), clock, policy)

    dispatcher.start()
    try:
        for _ in range(200):
            if (await outbox.get_email(db, entry.id)).status == EmailAction.SENT:
                break
            await asyncio.sleep(0.01)
    finally:
        await dispatcher.stop()

    assert (await outbox.get_email(db, entry.id)).status == EmailAction.SENT
    assert dispatcher._tasks == []


async def test_copies_reach_the_transport(db, clock, policy, session_factory, welcome_template):
    await outbox.enqueue_email(
        db, "welcome_email", "alice@x.com", VARS, now=clock.now(),
        cc=["carol@x.com"], bcc=["audit@x.com", "archive@x.com"],
    )
    transport = ScriptedTransport()

    await make_dispatcher(session_factory, transport, clock, policy).drain()

    [sent] = transport.sent
    assert sent["cc"] == ["carol@x.com"]
    assert sent["bcc"] == ["audit@x.com", "archive@x.com"]


@pytest.mark.parametrize("lease_seconds", [10, 9, 1])
async def test_lease_must_outlast_one_attempt(session_factory, clock, policy, lease_seconds):
    with pytest.raises(ValueError):
        make_dispatcher(session_factory, ScriptedTransport(), clock, policy, lease_seconds=lease_seconds)


async def test_lease_longer_than_attempt_is_accepted(session_factory, clock, policy):
    dispatcher = make_dispatcher(session_factory, ScriptedTransport(), clock, policy, lease_seconds=11)
    assert dispatcher.lease_seconds == 11
