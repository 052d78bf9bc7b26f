"""Periodic, single-flight repository synchronization.

Each tick fetches every ready project, pulls when the remote branch moved,
and flags the project's cache stale. The cache itself is not rebuilt here;
the next request that needs it does that.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from promptly.git.operations import GitOperationError, GitOperations
from promptly.git.supervisor import ProcessSupervisor
from promptly.git.urls import GitUrlError, redact_git_url
from promptly.models import Project, utc_now
from promptly.observability import record_project_sync, record_sync_tick, start_span

logger = logging.getLogger("promptly.sync")

MAX_TICK_HISTORY = 20


class RepoWatcher:
    def __init__(
        self,
        projects: Mapping[str, Project],
        git: GitOperations,
        supervisor: ProcessSupervisor,
        interval_seconds: float,
        max_history: int = MAX_TICK_HISTORY,
    ):
        self.projects = projects
        self.git = git
        self.supervisor = supervisor
        self.interval_seconds = interval_seconds
        self.tick_count = 0
        self.skipped_count = 0
        self._max_history = max_history
        self._ticks: list[dict[str, Any]] = []
        self._running_tick = False
        self._loop_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None

    # ── lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        if self._loop_task is not None:
            logger.warning("Repository watcher already running")
            return
        self._loop_task = asyncio.create_task(self._timer_loop())
        logger.info("Repository watcher started (interval=%ss)", self.interval_seconds)

    async def stop(self) -> None:
        for task in (self._loop_task, self._tick_task):
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._loop_task = None
        self._tick_task = None
        logger.info("Repository watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None

    @property
    def tick_in_progress(self) -> bool:
        return self._running_tick

    async def _timer_loop(self) -> None:
        # The timer never waits for a tick; an overlapping tick is skipped in run_once.
        while True:
            await asyncio.sleep(self.interval_seconds)
            if self._running_tick:
                self._skip("timer")
                continue
            self._tick_task = asyncio.create_task(self.run_once(trigger="timer"))
            self._tick_task.add_done_callback(self._tick_done)

    @staticmethod
    def _tick_done(task: asyncio.Task) -> None:
        # run_once has already logged and recorded the failure.
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Timer tick ended with %r", task.exception())

    # ── tick snapshots ─────────────────────────────────────────────

    def _record(self, snapshot: dict[str, Any]) -> None:
        self._ticks.insert(0, snapshot)
        del self._ticks[self._max_history :]

    def _new_snapshot(self, trigger: str, status: str) -> dict[str, Any]:
        now = datetime.now(timezone.utc).isoformat()
        return {
            "id": f"TICK-{uuid.uuid4()}",
            "trigger": trigger,
            "status": status,
            "startedAt": now,
            "finishedAt": "",
            "durationMs": 0,
            "checked": 0,
            "updated": 0,
            "failed": 0,
            "errors": {},
            "activeProcessesAtStart": self.supervisor.active_count,
            "activeProcessesAtEnd": None,
        }

    def _skip(self, trigger: str) -> dict[str, Any]:
        self.skipped_count += 1
        snapshot = self._new_snapshot(trigger, "skipped")
        snapshot["finishedAt"] = snapshot["startedAt"]
        snapshot["activeProcessesAtEnd"] = snapshot["activeProcessesAtStart"]
        self._record(snapshot)
        record_sync_tick("skipped", 0.0)
        logger.warning(
            "Skipping repository check: previous tick still running (%d supervised process(es))",
            self.supervisor.active_count,
        )
        return copy.deepcopy(snapshot)

    def recent_ticks(self, limit: int = MAX_TICK_HISTORY) -> list[dict[str, Any]]:
        return [copy.deepcopy(tick) for tick in self._ticks[: max(0, limit)]]

    def snapshot(self) -> dict[str, Any]:
        return {
            "running": self.is_running,
            "tickInProgress": self._running_tick,
            "intervalSeconds": self.interval_seconds,
            "tickCount": self.tick_count,
            "skippedCount": self.skipped_count,
            "recentTicks": self.recent_ticks(),
        }

    # ── work ───────────────────────────────────────────────────────

    async def sync_project(self, project: Project) -> bool:
        """Bring one checkout up to date. Returns True when new commits were pulled."""
        async with self.git.authenticated_remote(project.path, project.gitUrl, project.accessToken):
            if not await self.git.has_upstream_changes(project.path, project.branch):
                return False
            logger.info("Changes detected in %s (%s), pulling", redact_git_url(project.gitUrl), project.branch)
            await self.git.pull(project.path, project.branch)
        project.lastUpdated = utc_now()
        project.cacheStale = True
        return True

    async def run_once(self, trigger: str = "manual") -> dict[str, Any]:
        """Run one tick now. Skipped, not queued, while another tick runs."""
        if self._running_tick:
            return self._skip(trigger)

        self._running_tick = True
        self.tick_count += 1
        snapshot = self._new_snapshot(trigger, "running")
        self._record(snapshot)
        started = time.monotonic()
        result = "failed"
        try:
            with start_span("sync.tick", {"sync.trigger": trigger}):
                for project in list(self.projects.values()):
                    if project.status != "ready":
                        continue
                    snapshot["checked"] += 1
                    try:
                        if await self.sync_project(project):
                            snapshot["updated"] += 1
                            record_project_sync(project.id, "updated")
                        else:
                            record_project_sync(project.id, "unchanged")
                    except (GitOperationError, GitUrlError, OSError) as exc:
                        snapshot["failed"] += 1
                        snapshot["errors"][project.id] = str(exc)
                        record_project_sync(project.id, "failed")
                        logger.error("Failed to check/update project %s: %s", project.id, exc)
            result = "completed"
        except Exception as exc:
            snapshot["errors"]["tick"] = str(exc)
            logger.exception("Repository check tick failed")
            raise
        finally:
            duration_ms = (time.monotonic() - started) * 1000
            snapshot["status"] = result
            snapshot["finishedAt"] = datetime.now(timezone.utc).isoformat()
            snapshot["durationMs"] = int(duration_ms)
            snapshot["activeProcessesAtEnd"] = self.supervisor.active_count
            self._running_tick = False
            record_sync_tick(result, duration_ms)
            logger.info(
                "Repository check finished: %d checked, %d updated, %d failed (%.0fms)",
                snapshot["checked"],
                snapshot["updated"],
                snapshot["failed"],
                duration_ms,
            )
        return copy.deepcopy(snapshot)
