"""
Payment polling registry.

Webhooks can be lost, so every initialized payment is also polled. One
registry lives on ``app.state`` for the lifetime of the application and
owns one asyncio task per payment reference. Tasks back off exponentially,
open their own database session for each attempt, and stop as soon as the
reconciler reports a terminal outcome.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import NotFoundError
from app.database import async_session_factory
from app.models.store import Store
from app.services.payment_gateway import PaymentGateway
from app.services.payment_reconciler import PaymentReconciler, ReconcileResult

logger = logging.getLogger(__name__)


@dataclass
class PollState:
    reference: str
    store_id: uuid.UUID
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    attempts: int = 0
    next_delay: float = 0.0
    last_outcome: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "reference": self.reference,
            "store_id": str(self.store_id),
            "started_at": self.started_at.isoformat(),
            "attempts": self.attempts,
            "next_delay": self.next_delay,
            "last_outcome": self.last_outcome,
        }


def backoff_delays(initial: float, factor: float, maximum: float, attempts: int) -> Iterator[float]:
    """
    Example:
        >>> list(backoff_delays(5, 2, 30, 5))
        [5, 10, 20, 30, 30]
    """
    delay = initial
    for _ in range(attempts):
        yield delay
        delay = min(delay * factor, maximum)


class PaymentPollingRegistry:
    """
    Usage:
        registry = PaymentPollingRegistry(gateway)
        registry.start(store.id, reference)
        ...
        await registry.shutdown()
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        session_factory: Callable[[], AsyncSession] = async_session_factory,
        initial_interval: Optional[float] = None,
        max_interval: Optional[float] = None,
        backoff_factor: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ):
        self.gateway = gateway
        self.session_factory = session_factory
        self.initial_interval = initial_interval if initial_interval is not None else settings.PAYMENT_POLL_INITIAL_INTERVAL
        self.max_interval = max_interval if max_interval is not None else settings.PAYMENT_POLL_MAX_INTERVAL
        self.backoff_factor = backoff_factor if backoff_factor is not None else settings.PAYMENT_POLL_BACKOFF_FACTOR
        self.max_attempts = max_attempts if max_attempts is not None else settings.PAYMENT_POLL_MAX_ATTEMPTS

        self._tasks: Dict[str, asyncio.Task] = {}
        self._states: Dict[str, PollState] = {}

    def start(self, store_id: uuid.UUID, reference: str) -> bool:
        """Start polling ``reference``. Returns False if it is already polled."""
        if self.is_polling(reference):
            return False

        state = PollState(reference=reference, store_id=store_id, next_delay=self.initial_interval)
        self._states[reference] = state
        self._tasks[reference] = asyncio.create_task(
            self._run(state), name=f"payment-poll-{reference}"
        )
        logger.info(f"Started polling payment {reference} for store {store_id}")
        return True

    def stop(self, reference: str) -> bool:
        task = self._tasks.pop(reference, None)
        self._states.pop(reference, None)
        if task is None:
            return False
        task.cancel()
        logger.info(f"Stopped polling payment {reference}")
        return True

    def is_polling(self, reference: str) -> bool:
        task = self._tasks.get(reference)
        return task is not None and not task.done()

    def active(self) -> List[dict]:
        return [
            self._states[reference].as_dict()
            for reference in list(self._tasks)
            if self.is_polling(reference) and reference in self._states
        ]

    async def wait(self, reference: str, timeout: Optional[float] = None) -> None:
        """Wait for the poll of ``reference`` to finish."""
        task = self._tasks.get(reference)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._states.clear()
        if tasks:
            logger.info(f"Cancelled {len(tasks)} payment polls")

    # ==================== POLL LOOP ====================

    async def _run(self, state: PollState) -> None:
        try:
            delays = backoff_delays(
                self.initial_interval, self.backoff_factor, self.max_interval, self.max_attempts
            )
            for delay in delays:
                state.next_delay = delay
                await asyncio.sleep(delay)
                state.attempts += 1

                try:
                    result = await self._attempt(state)
                except NotFoundError as e:
                    logger.warning(f"Stopping poll of {state.reference}: {e.message}")
                    return
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Poll attempt {state.attempts} for {state.reference} failed: {e}")
                    continue

                state.last_outcome = result.outcome.value
                if result.is_terminal:
                    logger.info(
                        f"Payment {state.reference} resolved {result.outcome.value} "
                        f"after {state.attempts} polls"
                    )
                    return

            logger.warning(
                f"Gave up polling payment {state.reference} after {state.attempts} attempts"
            )
        finally:
            if self._tasks.get(state.reference) is asyncio.current_task():
                self._tasks.pop(state.reference, None)
                self._states.pop(state.reference, None)

    async def _attempt(self, state: PollState) -> ReconcileResult:
        async with self.session_factory() as session:
            try:
                store = await session.get(Store, state.store_id)
                if store is None:
                    raise NotFoundError("Store", state.store_id)
                result = await PaymentReconciler(session).poll(store, state.reference, self.gateway)
                await session.commit()
                return result
            except Exception:
                await session.rollback()
                raise
