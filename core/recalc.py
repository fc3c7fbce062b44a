"""
recalc.py — Serialized, debounced stage ranking.

Each stage has its own asyncio.Lock, so two ranking passes over the same
stage never interleave, while different stages rank in parallel. A request
that arrives while another request for the same stage is still waiting for
the lock joins that pending pass instead of queueing another one. A
stage's lock is dropped once no pass holds or waits for it.

The pass itself (timing_engine.recalculate_stage) runs in a worker thread
with its own SQLite connection and a bounded timeout. Failures never reach
the write that triggered the pass: they are logged and handed back as a
warning string for the API response.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import Iterable, Optional

from core.config import get_settings
from core.database import get_connection
from core.errors import RecalculationWarning
from core.timing_engine import RankingPass, recalculate_stage

logger = logging.getLogger("racetiming.recalc")


class StageRecalculator:
    """Per-stage ranking coordinator."""

    def __init__(self, timeout: Optional[float] = None,
                 db_path: Optional[Path] = None):
        self._timeout = timeout
        self.db_path = db_path
        self._locks: dict[int, asyncio.Lock] = {}
        self._lock_users: dict[int, int] = {}
        self._pending: dict[int, asyncio.Task] = {}
        self.completed_passes = 0

    @property
    def timeout(self) -> float:
        if self._timeout is not None:
            return self._timeout
        return get_settings().recalc_timeout

    def reset(self) -> None:
        """Forget locks and pending passes (they are bound to one event loop)."""
        self._locks.clear()
        self._lock_users.clear()
        self._pending.clear()
        self.completed_passes = 0

    def _acquire_lock_ref(self, stage_id: int) -> asyncio.Lock:
        lock = self._locks.get(stage_id)
        if lock is None:
            lock = self._locks[stage_id] = asyncio.Lock()
        self._lock_users[stage_id] = self._lock_users.get(stage_id, 0) + 1
        return lock

    def _release_lock_ref(self, stage_id: int) -> None:
        users = self._lock_users.get(stage_id, 0) - 1
        if users > 0:
            self._lock_users[stage_id] = users
            return
        self._lock_users.pop(stage_id, None)
        self._locks.pop(stage_id, None)

    async def recalculate(self, stage_id: int) -> Optional[str]:
        """Re-rank one stage. Returns a warning message, or None on success.

        The pass runs as its own task; callers only wait on it, so a caller
        that is cancelled leaves the pass running for everyone else.
        """
        task = self._pending.get(stage_id)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._locked_pass(stage_id))
            self._pending[stage_id] = task
        else:
            logger.debug("Stage %s: joining pending ranking pass", stage_id)
        return await asyncio.shield(task)

    async def recalculate_many(self, stage_ids: Iterable[Optional[int]]) -> list[str]:
        """Re-rank several stages one after another; collect the warnings."""
        warnings = []
        for stage_id in dict.fromkeys(s for s in stage_ids if s):
            warning = await self.recalculate(stage_id)
            if warning:
                warnings.append(warning)
        return warnings

    async def _locked_pass(self, stage_id: int) -> Optional[str]:
        me = asyncio.current_task()
        lock = self._acquire_lock_ref(stage_id)
        try:
            async with lock:
                # From here on, new requests must start a fresh pass:
                # this one may already have read the records.
                if self._pending.get(stage_id) is me:
                    del self._pending[stage_id]
                return await self._run(stage_id)
        finally:
            if self._pending.get(stage_id) is me:
                del self._pending[stage_id]
            self._release_lock_ref(stage_id)

    async def _run(self, stage_id: int) -> Optional[str]:
        cancel = threading.Event()
        timeout = self.timeout
        task = asyncio.ensure_future(
            asyncio.to_thread(self._pass, stage_id, cancel, timeout)
        )
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            # The worker's busy timeout equals ours, so this wait is bounded.
            # It must roll back before the lock is released.
            cancel.set()
            try:
                await task
            except Exception as e:
                msg = (f"Ranking of stage {stage_id} timed out after {timeout:g}s, "
                       f"positions not updated")
                logger.warning("%s (%s)", msg, e)
                return msg
            # Committed just before the cancel flag was seen.
            self.completed_passes += 1
            return None
        except RecalculationWarning as e:
            logger.warning(e.message)
            return e.message
        except Exception as e:
            logger.warning("Ranking of stage %s failed: %s", stage_id, e, exc_info=True)
            return f"Ranking of stage {stage_id} failed: {e}"

        self.completed_passes += 1
        return None

    def _pass(self, stage_id: int, cancel: threading.Event,
              busy_timeout: float) -> RankingPass:
        conn = get_connection(self.db_path, timeout=busy_timeout)
        try:
            return recalculate_stage(conn, stage_id, cancel)
        finally:
            conn.close()


# Singleton used by the API routes
recalculator = StageRecalculator()
