"""
Engine Pool

Bounded pool of reusable inference engines shared by concurrent requests.

Engines are expensive to construct and not safe for concurrent use, so the
pool lends each engine to exactly one caller at a time and builds new ones
lazily, never holding more than ``max_size``.

Features:
- Lazy engine construction up to a configured maximum
- FIFO hand-off to callers waiting for a free engine
- Optional acquire timeout
- Cancellation-safe waiting, construction and computation
- Generation-based invalidation after a model reload
- Statistics for monitoring

All bookkeeping is mutated on the event loop thread only. Construction and
inference run in a dedicated thread executor so model code never blocks the
loop.
"""

import asyncio
import functools
import logging
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from typing import Any, AsyncIterator, Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class PoolError(Exception):
    """Base class for engine pool errors."""


class EngineConstructionError(PoolError):
    """The engine factory failed; no slot was consumed."""


class PoolTimeoutError(PoolError):
    """No engine became available within the acquire timeout."""


class PoolClosedError(PoolError):
    """The pool has been closed and no longer lends engines."""


@dataclass
class PoolStats:
    """Point-in-time snapshot of pool state."""
    max_size: int
    created: int = 0
    idle: int = 0
    in_use: int = 0
    constructing: int = 0
    waiting: int = 0
    acquires: int = 0
    constructions: int = 0
    construction_failures: int = 0
    timeouts: int = 0
    generation: int = 0
    closed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert stats to dictionary."""
        return asdict(self)


class _Entry:
    __slots__ = ("engine", "generation")

    def __init__(self, engine: Any, generation: int):
        self.engine = engine
        self.generation = generation


class EnginePool:
    """
    Bounded, lazily-filled pool of inference engines.

    Example:
        >>> pool = EnginePool(factory=lambda: SentimentEngine.from_bytes(blob), max_size=4)
        >>> result = await pool.predict(SentimentInput(text="great movie"))
        >>> async with pool.lease() as engine:
        ...     engine.predict(SentimentInput(text="awful"))
        >>> await pool.close()
    """

    def __init__(
        self,
        factory: Callable[[], Any],
        max_size: int = 4,
        acquire_timeout: Optional[float] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        """
        Initialize engine pool.

        Args:
            factory: Zero-argument callable returning a new engine. Runs in a
                worker thread.
            max_size: Maximum number of engines alive at once
            acquire_timeout: Default seconds to wait for an engine (None waits forever)
            executor: Executor for construction and inference. When omitted the
                pool owns one sized to ``max_size``.
        """
        if max_size < 1:
            raise ValueError(f"max_size must be at least 1, got {max_size}")
        if acquire_timeout is not None and acquire_timeout <= 0:
            raise ValueError("acquire_timeout must be positive or None")

        self.max_size = max_size
        self.acquire_timeout = acquire_timeout
        self._factory = factory
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_size, thread_name_prefix="engine"
        )

        self._idle: Deque[_Entry] = deque()
        self._lent: Dict[int, _Entry] = {}
        self._waiters: Deque[asyncio.Future] = deque()
        self._created = 0
        self._generation = 0
        self._closed = False

        self._acquires = 0
        self._constructions = 0
        self._construction_failures = 0
        self._timeouts = 0

        logger.info(
            f"Initialized EnginePool: max_size={max_size}, "
            f"acquire_timeout={acquire_timeout}"
        )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def generation(self) -> int:
        return self._generation

    # ------------------------------------------------------------------ #
    # Borrow / return
    # ------------------------------------------------------------------ #

    async def acquire(self, timeout: Optional[float] = _UNSET) -> Any:
        """
        Borrow an engine.

        Returns an idle engine if there is one, otherwise constructs a new one
        while below ``max_size``, otherwise waits for a release.

        Args:
            timeout: Seconds to wait when the pool is exhausted. Defaults to
                the pool's ``acquire_timeout``; None waits forever.

        Returns:
            An engine that must be passed back to ``release()`` exactly once

        Raises:
            EngineConstructionError: If the factory failed
            PoolTimeoutError: If no engine became available in time
            PoolClosedError: If the pool is closed
        """
        if timeout is _UNSET:
            timeout = self.acquire_timeout
        self._check_open()
        self._acquires += 1

        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        retry = False

        while True:
            self._check_open()

            if self._idle:
                entry = self._idle.pop()
                self._lent[id(entry.engine)] = entry
                return entry.engine

            if self._created < self.max_size:
                return await self._construct()

            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            entry = await self._wait(remaining, front=retry)
            if entry is not None:
                return entry.engine
            # Woken because a slot was freed; try to take it first.
            retry = True

    def release(self, engine: Any) -> None:
        """
        Return a borrowed engine to the pool and wake one waiter.

        Must be called from the event loop thread.

        Raises:
            PoolError: If the engine is not currently lent by this pool
        """
        entry = self._lent.pop(id(engine), None)
        if entry is None:
            raise PoolError("Engine is not currently lent by this pool")

        if self._closed or entry.generation != self._generation:
            self._discard(entry)
            return

        self._dispatch(entry)

    @asynccontextmanager
    async def lease(self, timeout: Optional[float] = _UNSET) -> AsyncIterator[Any]:
        """Borrow an engine for the duration of an ``async with`` block."""
        engine = await self.acquire(timeout)
        try:
            yield engine
        finally:
            self.release(engine)

    async def predict(self, data: Any) -> Any:
        """
        Run one inference on a pooled engine.

        The engine's ``predict`` runs in the pool executor. The engine is
        released afterwards whether the call succeeds or fails. If the caller
        is cancelled mid-computation the engine stays lent until the worker
        thread finishes with it.

        Args:
            data: Input passed to ``engine.predict``

        Returns:
            Whatever the engine returns

        Raises:
            Any exception raised by the engine, or the errors of ``acquire()``
        """
        engine = await self.acquire()
        loop = asyncio.get_running_loop()
        future = None

        try:
            future = loop.run_in_executor(self._executor, engine.predict, data)
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            if future is not None and not future.done():
                future.add_done_callback(
                    functools.partial(self._release_when_done, engine)
                )
                engine = None
            raise
        finally:
            if engine is not None:
                self.release(engine)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def warmup(self, count: int) -> int:
        """
        Eagerly construct engines so the first requests don't pay for it.

        Args:
            count: Number of engines to have ready (capped at ``max_size``)

        Returns:
            Number of engines available after warmup

        Raises:
            EngineConstructionError: If any construction failed
        """
        count = min(count, self.max_size)
        if count <= 0:
            return 0

        results = await asyncio.gather(
            *(self.acquire(timeout=None) for _ in range(count)),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        for result in results:
            if not isinstance(result, BaseException):
                self.release(result)

        if errors:
            raise errors[0]

        logger.info(f"Warmed up {count} engine(s)")
        return len(self._idle)

    def invalidate(self) -> int:
        """
        Retire every engine built before now.

        Idle engines are discarded immediately, lent engines when they come
        back. Later acquisitions construct fresh engines from the factory.

        Returns:
            The new pool generation
        """
        self._generation += 1
        stale = list(self._idle)
        self._idle.clear()
        for entry in stale:
            self._discard(entry)

        logger.info(
            f"Pool invalidated: generation={self._generation}, "
            f"discarded_idle={len(stale)}, pending_return={len(self._lent)}"
        )
        return self._generation

    async def close(self) -> None:
        """
        Shut the pool down.

        Waiters fail with PoolClosedError, idle engines are closed, and lent
        engines are closed when they are released.
        """
        if self._closed:
            return

        logger.info("Closing engine pool")
        self._closed = True

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(PoolClosedError("Engine pool closed"))

        idle = list(self._idle)
        self._idle.clear()
        for entry in idle:
            self._discard(entry)

        if self._owns_executor:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(
                None, functools.partial(self._executor.shutdown, wait=True)
            )

        logger.info("Engine pool closed")

    def stats(self) -> PoolStats:
        """Get a snapshot of pool statistics."""
        idle = len(self._idle)
        in_use = len(self._lent)
        return PoolStats(
            max_size=self.max_size,
            created=self._created,
            idle=idle,
            in_use=in_use,
            constructing=self._created - idle - in_use,
            waiting=sum(1 for w in self._waiters if not w.done()),
            acquires=self._acquires,
            constructions=self._constructions,
            construction_failures=self._construction_failures,
            timeouts=self._timeouts,
            generation=self._generation,
            closed=self._closed,
        )

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _check_open(self) -> None:
        if self._closed:
            raise PoolClosedError("Engine pool closed")

    async def _construct(self) -> Any:
        """Build a new engine in the executor; the slot is reserved up front."""
        self._created += 1
        self._constructions += 1
        generation = self._generation

        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, self._factory)

        try:
            engine = await asyncio.shield(future)
        except asyncio.CancelledError:
            if not future.done():
                future.add_done_callback(
                    functools.partial(self._adopt_constructed, generation)
                )
            else:
                self._adopt_constructed(generation, future)
            raise
        except Exception as e:
            self._created -= 1
            self._construction_failures += 1
            logger.error(f"Engine construction failed: {e}")
            self._notify_slot()
            raise EngineConstructionError(f"Engine construction failed: {e}") from e

        entry = _Entry(engine, generation)
        self._lent[id(engine)] = entry
        logger.debug(f"Constructed engine {self._created}/{self.max_size}")
        return engine

    def _adopt_constructed(self, generation: int, future: asyncio.Future) -> None:
        """Take ownership of an engine whose requester was cancelled."""
        if future.cancelled() or future.exception() is not None:
            error = "cancelled" if future.cancelled() else future.exception()
            logger.error(f"Engine construction failed after requester left: {error}")
            self._created -= 1
            self._construction_failures += 1
            self._notify_slot()
            return

        entry = _Entry(future.result(), generation)
        if self._closed or generation != self._generation:
            self._discard(entry)
        else:
            self._dispatch(entry)

    def _release_when_done(self, engine: Any, future: asyncio.Future) -> None:
        if not future.cancelled():
            future.exception()
        self.release(engine)

    async def _wait(self, timeout: Optional[float], front: bool = False) -> Optional[_Entry]:
        """
        Park until an engine is handed over or a slot frees up.

        Returns the handed-over entry, or None when woken to retry construction.
        """
        waiter = asyncio.get_running_loop().create_future()
        if front:
            self._waiters.appendleft(waiter)
        else:
            self._waiters.append(waiter)

        try:
            if timeout is None:
                return await waiter
            return await asyncio.wait_for(waiter, timeout)
        except asyncio.TimeoutError:
            # A hand-off may have landed just as the timer fired.
            if self._handed_over(waiter):
                entry = waiter.result()
                if entry is not None:
                    return entry
                self._notify_slot()
            self._timeouts += 1
            raise PoolTimeoutError(
                f"No engine available within {timeout:.3f}s "
                f"(max_size={self.max_size})"
            ) from None
        except BaseException:
            if self._handed_over(waiter):
                entry = waiter.result()
                if entry is None:
                    self._notify_slot()
                else:
                    self._lent.pop(id(entry.engine), None)
                    self._dispatch(entry)
            raise
        finally:
            try:
                self._waiters.remove(waiter)
            except ValueError:
                pass

    @staticmethod
    def _handed_over(waiter: asyncio.Future) -> bool:
        return waiter.done() and not waiter.cancelled() and waiter.exception() is None

    def _dispatch(self, entry: _Entry) -> None:
        """Hand an engine to the first live waiter, or park it as idle."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                self._lent[id(entry.engine)] = entry
                waiter.set_result(entry)
                return
        self._idle.append(entry)

    def _notify_slot(self) -> None:
        """Wake one waiter so it can construct into a freed slot."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return

    def _discard(self, entry: _Entry) -> None:
        self._created -= 1
        close = getattr(entry.engine, "close", None)
        if callable(close):
            try:
                close()
            except Exception as e:
                logger.warning(f"Error closing engine: {e}")
        if not self._closed:
            self._notify_slot()

    def __repr__(self) -> str:
        return (
            f"EnginePool(max_size={self.max_size}, created={self._created}, "
            f"idle={len(self._idle)}, in_use={len(self._lent)}, closed={self._closed})"
        )
