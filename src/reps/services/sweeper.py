"""Sweep worker — deletes expired auth records in the background.

Learn: Expired sessions, magic-link tokens and device codes are already
unusable (every read checks expiry), so deleting them is housekeeping,
not security. Each sweep_expired() is one conditional DELETE, which
makes running it concurrently, twice, or on an empty table harmless.

This runs as a background task in the FastAPI lifespan. The
`reps sweep` CLI command calls sweep_once() directly for cron setups.
"""

import asyncio
from dataclasses import asdict, dataclass
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reps.auth.device_flow import DeviceAuthService
from reps.auth.magic_link import MagicLinkService
from reps.auth.sessions import SessionManager
from reps.db.engine import async_session_factory
from reps.mail import LogMailer

logger = structlog.get_logger()


@dataclass
class SweepResult:
    sessions: int = 0
    magic_links: int = 0
    device_codes: int = 0

    @property
    def total(self) -> int:
        return self.sessions + self.magic_links + self.device_codes


async def sweep_all(db: AsyncSession) -> SweepResult:
    """Run every expiry sweep on one session."""
    return SweepResult(
        sessions=await SessionManager(db).sweep_expired(),
        magic_links=await MagicLinkService(db, LogMailer()).sweep_expired(),
        device_codes=await DeviceAuthService(db).sweep_expired(),
    )


class SweepWorker:
    """Background worker that periodically runs the expiry sweeps.

    Usage:
        worker = SweepWorker(poll_interval=3600)
        asyncio.create_task(worker.run_loop())
    """

    def __init__(
        self,
        poll_interval: float = 3600.0,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self.poll_interval = poll_interval
        self.session_factory = session_factory or async_session_factory
        self._running = False

    async def run_loop(self) -> None:
        """Main worker loop — sweep, then sleep."""
        self._running = True
        logger.info("sweeper.started", poll_interval=self.poll_interval)

        while self._running:
            try:
                await self.sweep_once()
            except Exception:
                # A failed sweep is retried next interval.
                logger.exception("sweeper.error")
            await asyncio.sleep(self.poll_interval)

    async def sweep_once(self) -> SweepResult:
        """Run one sweep in its own DB session."""
        async with self.session_factory() as db:
            result = await sweep_all(db)
        if result.total:
            logger.info("sweeper.completed", **asdict(result))
        return result

    def stop(self) -> None:
        """Signal the worker to stop."""
        self._running = False
        logger.info("sweeper.stopping")
