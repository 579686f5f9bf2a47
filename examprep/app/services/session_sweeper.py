"""Completion of abandoned practice sessions.

A session left open for longer than ``abandoned_session_hours`` is marked
completed with ``end_time`` set to the sweep time. The sweep runs on demand
(for one user or everyone) and, when enabled, periodically in the background.
"""

import asyncio
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from examprep.app.core.config import settings
from examprep.app.core.logging import get_logger
from examprep.app.core.utils import utc_now
from examprep.app.db.async_session import get_async_session_maker
from examprep.app.db.crud import abandonment_cutoff, complete_sessions_started_before
from examprep.app.services.retry import RetryPolicy, run_with_retry

logger = get_logger(__name__)


class SessionSweeper:
    """Closes sessions nobody finished.

    Provides:
    - On-demand sweep for a single user or all users
    - Periodic background sweep with graceful shutdown
    """

    def __init__(
        self,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        abandoned_hours: Optional[float] = None,
        interval_seconds: Optional[float] = None,
    ) -> None:
        self._session_maker = session_maker
        self._retry_policy = retry_policy
        self._abandoned_hours = abandoned_hours or settings.abandoned_session_hours
        self._interval = interval_seconds or settings.sweep_interval_seconds
        self._sweep_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

    def _get_session_maker(self) -> async_sessionmaker[AsyncSession]:
        if self._session_maker is None:
            self._session_maker = get_async_session_maker()
        return self._session_maker

    @property
    def running(self) -> bool:
        return self._sweep_task is not None

    async def complete_abandoned_sessions(
        self, user_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> int:
        """Complete open sessions older than the abandonment window.

        Args:
            user_id: Only sweep this user's sessions; all users when None
            now: Sweep instant, defaults to the current UTC time

        Returns:
            Number of sessions completed
        """
        now = now or utc_now()
        cutoff = abandonment_cutoff(now, self._abandoned_hours)

        async def sweep() -> list[int]:
            async with self._get_session_maker()() as session:
                async with session.begin():
                    return await complete_sessions_started_before(
                        session, cutoff, now, user_id=user_id
                    )

        session_ids = await run_with_retry(sweep, self._retry_policy, name="complete_abandoned_sessions")
        if session_ids:
            logger.info(
                f"Completed {len(session_ids)} abandoned session(s): {session_ids}",
                extra={"user_id": user_id} if user_id else None,
            )
        return len(session_ids)

    async def start(self) -> None:
        """Start the periodic sweep task."""
        if self._sweep_task is not None:
            return

        self._shutdown_event.clear()
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Started session sweeper (interval={self._interval}s)")

    async def stop(self) -> None:
        """Stop the periodic sweep task."""
        if self._sweep_task is None:
            return

        self._shutdown_event.set()

        try:
            await asyncio.wait_for(self._sweep_task, timeout=5.0)
        except asyncio.TimeoutError:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass

        self._sweep_task = None
        logger.info("Stopped session sweeper")

    async def _sweep_loop(self) -> None:
        """Background loop that sweeps every interval until shutdown."""
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._interval,
                )
            except asyncio.TimeoutError:
                pass

            if self._shutdown_event.is_set():
                break

            try:
                await self.complete_abandoned_sessions()
            except Exception as e:
                logger.error(f"Error in session sweep loop: {type(e).__name__}: {e}")


# Global service instance
_session_sweeper: Optional[SessionSweeper] = None


def get_session_sweeper() -> SessionSweeper:
    """Get the global session sweeper instance."""
    global _session_sweeper
    if _session_sweeper is None:
        _session_sweeper = SessionSweeper()
    return _session_sweeper


def reset_session_sweeper() -> None:
    """Reset the global session sweeper instance.

    Useful for testing.
    """
    global _session_sweeper
    _session_sweeper = None
