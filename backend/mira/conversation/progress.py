"""
Simulated progress for long-running scan and report calls.

The animation advances in fixed steps towards a ceiling of 95 while the real
call runs; only ``complete()`` (called after the real result arrives) moves
the value to 100.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

from mira.utils.logger import get_logger

logger = get_logger(__name__)

PROGRESS_CEILING = 95.0
SCAN_STEPS = 20
REPORT_STEPS = 10
DEFAULT_STEP_DELAY = 0.5


class ProgressTracker:
    """Non-decreasing progress value, reported through an optional async callback."""

    def __init__(self, label: str = "", on_change: Optional[Callable[[float, str], Awaitable[None]]] = None):
        self.label = label
        self.value = 0.0
        self.history: list[float] = [0.0]
        self.completed = False
        self._on_change = on_change

    async def advance(self, amount: float) -> float:
        if self.completed:
            return self.value
        new_value = min(self.value + amount, PROGRESS_CEILING)
        if new_value > self.value:
            await self._set(new_value)
        return self.value

    async def complete(self) -> None:
        self.completed = True
        await self._set(100.0)

    async def _set(self, value: float) -> None:
        self.value = value
        self.history.append(value)
        if self._on_change:
            try:
                await self._on_change(value, self.label)
            except Exception as e:
                logger.warning("Progress callback failed", extra={"action": "progress_emit_failed", "extra": str(e)})


async def _animate(tracker: ProgressTracker, total_steps: int, step_delay: float) -> None:
    increment = 100.0 / total_steps
    for _ in range(total_steps):
        await asyncio.sleep(step_delay)
        await tracker.advance(increment)


async def run_with_progress(
    call: Awaitable[Any],
    tracker: ProgressTracker,
    total_steps: int = SCAN_STEPS,
    step_delay: float = DEFAULT_STEP_DELAY,
) -> Any:
    """Await ``call`` and the progress animation together; return the call's result.

    If the call raises, the animation is cancelled and the exception propagates
    with the tracker left below 100.
    """
    animation = asyncio.ensure_future(_animate(tracker, total_steps, step_delay))
    work = asyncio.ensure_future(call)
    try:
        result, _ = await asyncio.gather(work, animation)
    except BaseException:
        animation.cancel()
        work.cancel()
        raise
    await tracker.complete()
    return result
