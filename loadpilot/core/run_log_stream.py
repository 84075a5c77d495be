"""
k6 log output handling.

k6 prints a running progress bar (``... [ 42% ] ...``). We only extract the percentage
for the cosmetic ``progress`` column; completion is decided elsewhere.
"""

from __future__ import annotations

import logging
import re
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

_PROGRESS_RE = re.compile(r"\[\s*(\d+)%\s*\]")

ProgressSink = Callable[[int], Awaitable[None]]


def parse_progress(line: str) -> Optional[int]:
    """Last ``[NN%]`` marker in ``line``, clamped to 0-100, or None."""
    matches = _PROGRESS_RE.findall(str(line or ""))
    if not matches:
        return None
    return max(0, min(100, int(matches[-1])))


class ProgressTracker:
    """
    Per-run log line consumer.

    Persists progress only when it increases. Returns True from :meth:`on_line`
    once 100% has been seen, which ends the log stream.
    """

    def __init__(self, run_id: str, sink: ProgressSink) -> None:
        self.run_id = run_id
        self._sink = sink
        self.progress = 0
        self.done = False

    async def on_line(self, line: str) -> bool:
        text = str(line or "").rstrip()
        if text:
            logger.debug("[k6:%s] %s", self.run_id, text)
        value = parse_progress(text)
        if value is not None and value > self.progress:
            self.progress = value
            try:
                await self._sink(value)
            except Exception as e:
                logger.warning("Failed to persist progress for run %s: %s", self.run_id, e)
        if self.progress >= 100:
            self.done = True
        return self.done
