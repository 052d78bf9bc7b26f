"""Prompt template watcher using watchfiles.

The system instruction is baked into every context cache, so editing a
template marks all caches stale.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional

from watchfiles import Change, awatch

logger = logging.getLogger("promptly.watcher")


def template_changes(changes: set[tuple[Change, str]]) -> list[Path]:
    """Markdown templates among a raw watchfiles change set."""
    return sorted({Path(path) for _change, path in changes if Path(path).suffix == ".md"})


class PromptWatcher:
    def __init__(self, prompts_dir: Path, on_change: Callable[[list[Path]], None]):
        self.prompts_dir = Path(prompts_dir)
        self.on_change = on_change
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    async def start(self) -> None:
        if self._task is not None:
            logger.warning("Prompt watcher already running")
            return
        if not self.prompts_dir.is_dir():
            logger.warning("Prompts directory %s does not exist; template watching disabled", self.prompts_dir)
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._watch_loop(self._stop_event))
        logger.info("Prompt watcher started for %s", self.prompts_dir)

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._stop_event = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def handle_changes(self, changes: set[tuple[Change, str]]) -> list[Path]:
        changed = template_changes(changes)
        if changed:
            logger.info("Prompt template(s) changed: %s", ", ".join(path.name for path in changed))
            self.on_change(changed)
        return changed

    async def _watch_loop(self, stop_event: asyncio.Event) -> None:
        try:
            async for changes in awatch(self.prompts_dir, stop_event=stop_event):
                self.handle_changes(changes)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Prompt watcher error: %s", exc)
