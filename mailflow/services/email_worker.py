import asyncio
import logging
import random

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailflow.config import settings
from mailflow.services import outbox
from mailflow.services.backoff import BackoffPolicy
from mailflow.services.clock import Clock, system_clock
from mailflow.services.outbox import ClaimedEmail
from mailflow.services.transport import DeliveryResult, TransientFailure, Transport

logger = logging.getLogger(__name__)


class EmailDispatcher:
    """
    Pool of workers draining the outbox table.

    Workers share nothing in process: each one claims entries through the
    compare-and-set in ``outbox.claim_next``, so several processes can run a
    pool against the same database.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        transport: Transport,
        *,
        clock: Clock = system_clock,
        policy: BackoffPolicy | None = None,
        workers: int | None = None,
        poll_interval: float | None = None,
        lease_seconds: float | None = None,
        claim_timeout: float | None = None,
        transport_timeout: float | None = None,
        commit_timeout: float | None = None,
        rng: random.Random | None = None,
    ):
        self.session_factory = session_factory
        self.transport = transport
        self.clock = clock
        self.policy = policy or BackoffPolicy.from_settings()
        self.workers = workers or settings.OUTBOX_WORKERS
        self.poll_interval = poll_interval if poll_interval is not None else settings.OUTBOX_POLL_INTERVAL
        self.lease_seconds = lease_seconds or settings.OUTBOX_LEASE_SECONDS
        self.claim_timeout = claim_timeout or settings.OUTBOX_CLAIM_TIMEOUT
        self.transport_timeout = transport_timeout or settings.EMAIL_TIMEOUT
        self.commit_timeout = commit_timeout or settings.OUTBOX_COMMIT_TIMEOUT
        if self.lease_seconds <= self.transport_timeout + self.commit_timeout:
            # A lease shorter than one attempt lets a second worker reclaim a live send
            raise ValueError(
                f"lease_seconds ({self.lease_seconds:g}) must exceed transport_timeout + commit_timeout "
                f"({self.transport_timeout:g} + {self.commit_timeout:g})"
            )
        self.rng = rng or random.Random()
        self._tasks: list[asyncio.Task] = []
        self._stopping: asyncio.Event | None = None

    async def run_once(self, worker_id: str) -> bool:
        """Claim and process at most one entry. Returns False when nothing was eligible."""
        async with self.session_factory() as db:
            try:
                claim = await asyncio.wait_for(
                    outbox.claim_next(
                        db,
                        worker_id,
                        now=self.clock.now(),
                        lease_seconds=self.lease_seconds,
                        policy=self.policy,
                    ),
                    self.claim_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning("[WORKER %s] Claim timed out after %.1fs", worker_id, self.claim_timeout)
                return False

        if claim is None:
            return False

        outcome = await self._deliver(claim)

        async with self.session_factory() as db:
            try:
                await asyncio.wait_for(
                    outbox.complete_attempt(
                        db, claim, outcome, now=self.clock.now(), policy=self.policy, rng=self.rng
                    ),
                    self.commit_timeout,
                )
            except asyncio.TimeoutError:
                # Entry stays Processing; lease expiry hands it to the retry policy
                logger.error("[WORKER %s] Recording result for email %s timed out", worker_id, claim.id)
        return True

    async def _deliver(self, claim: ClaimedEmail) -> DeliveryResult:
        try:
            return await asyncio.wait_for(
                self.transport.send(
                    subject=claim.subject,
                    html_body=claim.html_body,
                    text_body=claim.text_body,
                    recipient=claim.to_email,
                    from_email=claim.from_email,
                    from_name=claim.from_name,
                    cc=claim.cc,
                    bcc=claim.bcc,
                ),
                self.transport_timeout,
            )
        except asyncio.TimeoutError:
            return TransientFailure(f"Transport timed out after {self.transport_timeout:g}s")
        except Exception as e:
            logger.exception("[WORKER %s] Transport raised for email %s", claim.worker_id, claim.id)
            return TransientFailure(str(e) or e.__class__.__name__)

    async def drain(self, worker_id: str = "drain", limit: int = 1000) -> int:
        """Process eligible entries until none are left; returns how many were handled."""
        handled = 0
        while handled < limit and await self.run_once(worker_id):
            handled += 1
        return handled

    async def email_worker(self, worker_id: str):
        """
        Background worker that claims outbox entries and sends them.
        Runs until stop() is called.
        """
        logger.info("[WORKER %s] Email worker started.", worker_id)
        stopping = self._stopping
        while not stopping.is_set():
            try:
                processed = await self.run_once(worker_id)
            except Exception:
                logger.exception("[WORKER %s] Unexpected error while processing outbox", worker_id)
                processed = False

            if not processed:
                try:
                    await asyncio.wait_for(stopping.wait(), self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        logger.info("[WORKER %s] Email worker shut down.", worker_id)

    def start(self):
        if self._tasks:
            return
        self._stopping = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self.email_worker(f"worker-{i + 1}"))
            for i in range(self.workers)
        ]

    async def stop(self):
        if not self._tasks:
            return
        self._stopping.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
