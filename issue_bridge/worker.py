"""Bridge queue worker process.

Run any number of these side by side; the queue's atomic claim keeps them
from double-processing items.

    python -m issue_bridge.worker
"""

import asyncio
import logging
import os
import socket

from sqlalchemy.ext.asyncio import async_sessionmaker

from issue_bridge.config import settings
from issue_bridge.database import async_session, close_db, init_db
from issue_bridge.handlers.processor import run_batch

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return settings.worker_id or f"{socket.gethostname()}-{os.getpid()}"


class BridgeWorker:
    """Polls the bridge queue and processes claimed items."""

    def __init__(
        self,
        worker_id: str | None = None,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        session_factory: async_sessionmaker = async_session,
    ) -> None:
        self.worker_id = worker_id or default_worker_id()
        self.batch_size = batch_size or settings.claim_batch_size
        self.poll_interval = poll_interval if poll_interval is not None else settings.poll_interval_seconds
        self._session_factory = session_factory
        self._stopping = asyncio.Event()

    async def run_once(self) -> dict[str, int]:
        return await run_batch(self.worker_id, self.batch_size, session_factory=self._session_factory)

    async def run_forever(self) -> None:
        logger.info("Worker %s polling every %.1fs", self.worker_id, self.poll_interval)
        while not self._stopping.is_set():
            try:
                outcomes = await self.run_once()
            except Exception:
                logger.exception("Worker %s poll failed", self.worker_id)
                outcomes = {}
            if outcomes:
                logger.info("Worker %s batch outcomes: %s", self.worker_id, outcomes)
                # Keep draining while there is work.
                continue
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Worker %s stopped", self.worker_id)

    def stop(self) -> None:
        self._stopping.set()


async def _run() -> None:
    await init_db()
    worker = BridgeWorker()
    try:
        await worker.run_forever()
    finally:
        await close_db()


def main() -> None:
    logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")


if __name__ == "__main__":
    main()
