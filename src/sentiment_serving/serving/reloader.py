"""
Model Reloader

Polls the model source in the background and swaps in a new model when the
archive changes. The new archive is test-loaded before the swap, so a broken
upload never replaces a working model.
"""

import asyncio
import functools
import hashlib
import logging
from typing import Optional

from ..metrics import model_reloads
from .engine import EngineFactory, SentimentEngine
from .model_source import ModelSource
from .pool import EnginePool

logger = logging.getLogger(__name__)


def _digest(blob: bytes) -> str:
    return hashlib.sha256(blob).hexdigest()


class ModelReloader:
    """
    Background watcher that keeps the pool on the latest model.

    Example:
        >>> reloader = ModelReloader(source, factory, pool, interval=300)
        >>> await reloader.start()
        >>> ...
        >>> await reloader.shutdown()
    """

    def __init__(
        self,
        source: ModelSource,
        factory: EngineFactory,
        pool: EnginePool,
        interval: float = 300.0,
    ):
        if interval <= 0:
            raise ValueError("Reload interval must be positive")

        self.source = source
        self.factory = factory
        self.pool = pool
        self.interval = interval

        self.reloads = 0
        self.failures = 0
        self._task: Optional[asyncio.Task] = None
        self._shutdown_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the polling loop."""
        if self.running:
            logger.warning("Model reloader already running")
            return

        self._shutdown_event = asyncio.Event()
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(f"Model reloader started: uri={self.source.uri}, interval={self.interval}s")

    async def shutdown(self) -> None:
        """Stop the polling loop."""
        if not self.running:
            return

        self._shutdown_event.set()
        await self._task
        logger.info("Model reloader stopped")

    async def check_once(self) -> bool:
        """
        Poll the source once and reload if it changed.

        Returns:
            True if a new model was installed
        """
        loop = asyncio.get_running_loop()

        changed = await loop.run_in_executor(None, self.source.has_changed)
        if not changed:
            return False

        logger.info(f"Model archive at {self.source.uri} changed, reloading")
        try:
            # A cached copy is the model already being served.
            blob = await loop.run_in_executor(
                None, functools.partial(self.source.fetch, use_cache=False)
            )
            if _digest(blob) == _digest(self.factory.blob):
                logger.info(f"Model archive at {self.source.uri} is unchanged, keeping current engines")
                return False
            # Trial load; keep serving the current model if this fails.
            engine = await loop.run_in_executor(None, SentimentEngine.from_bytes, blob)
            engine.close()
        except Exception as e:
            self.failures += 1
            model_reloads.labels(status="error").inc()
            logger.error(f"Model reload failed, keeping current model: {e}", exc_info=True)
            return False

        self.factory.update(blob)
        self.pool.invalidate()
        self.reloads += 1
        model_reloads.labels(status="success").inc()
        logger.info(f"Model reloaded (version {self.factory.version})")
        return True

    async def _poll_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.check_once()
            except Exception as e:
                logger.error(f"Error in model reload loop: {e}", exc_info=True)
