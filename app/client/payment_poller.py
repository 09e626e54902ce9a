"""Client-side payment status polling.

The poll budget here is independent of the server's hold window: the server
releases an unpaid booking on its own schedule whether or not anyone is still
polling, and a poller that gives up never changes server state.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

import httpx


logger = logging.getLogger(__name__)


class PollOutcome:
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    INVALID = "invalid"
    TIMED_OUT = "timed_out"

    TERMINAL_PAYMENT = (COMPLETED, FAILED)


@dataclass
class PollResult:
    status: str
    attempts: int
    payment: Optional[Dict] = None
    detail: Optional[str] = None

    @property
    def timed_out(self) -> bool:
        return self.status == PollOutcome.TIMED_OUT


class PaymentPoller:
    """Polls ``GET /payments/{id}/status`` with exponential backoff.

    Stops on a terminal payment status, on ``410`` (hold expired) or ``409``
    (booking no longer payable), or after ``max_attempts`` polls. ``503`` and
    transport errors count as attempts and are retried.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        max_attempts: int = 10,
        interval: float = 2.0,
        backoff: float = 1.5,
        max_interval: float = 15.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.client = client
        self.max_attempts = max_attempts
        self.interval = interval
        self.backoff = backoff
        self.max_interval = max_interval
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        return min(self.interval * (self.backoff ** attempt), self.max_interval)

    async def poll(self, payment_id: int, headers: Optional[Dict[str, str]] = None) -> PollResult:
        last_payment = None
        for attempt in range(self.max_attempts):
            if attempt:
                await self._sleep(self.delay_for(attempt - 1))
            try:
                resp = await self.client.get(f"/payments/{payment_id}/status", headers=headers)
            except httpx.TransportError as exc:
                logger.warning("payment %s poll %d failed: %s", payment_id, attempt + 1, exc)
                continue

            if resp.status_code == 410:
                return PollResult(PollOutcome.EXPIRED, attempt + 1, last_payment, _detail(resp))
            if resp.status_code == 409:
                return PollResult(PollOutcome.INVALID, attempt + 1, last_payment, _detail(resp))
            if resp.status_code == 503:
                logger.info("payment %s poll %d: provider unavailable", payment_id, attempt + 1)
                continue
            resp.raise_for_status()

            last_payment = resp.json()
            status = last_payment.get("status")
            if status in PollOutcome.TERMINAL_PAYMENT:
                return PollResult(status, attempt + 1, last_payment)

        return PollResult(PollOutcome.TIMED_OUT, self.max_attempts, last_payment)


def _detail(resp: httpx.Response) -> Optional[str]:
    try:
        return resp.json().get("detail")
    except ValueError:
        return resp.text or None
