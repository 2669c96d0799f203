from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from tubedesk.models.sync_contracts import ProgressSnapshot
from tubedesk.services.batch_sync_controller import BatchSyncController
from tubedesk.services.progress_reporter import ProgressReporter
from tubedesk.services.quota_tracker import QuotaStatus, QuotaTracker, fit_to_quota
from tubedesk.services.sync_types import SyncConfiguration, SyncError

LOGGER = logging.getLogger("tubedesk.sync_service")

ControllerFactory = Callable[[str, ProgressReporter], BatchSyncController]
QuotaTrackerFactory = Callable[[str], QuotaTracker]


class SyncAlreadyRunningError(SyncError):
    pass


class SyncSessionNotFoundError(SyncError):
    pass


@dataclass
class _SyncSession:
    controller: BatchSyncController
    reporter: ProgressReporter
    task: asyncio.Task[ProgressSnapshot] | None = None
    latest: ProgressSnapshot | None = None
    unsubscribe: Callable[[], None] | None = field(default=None, repr=False)


class CatalogSyncService:
    """Keeps at most one sync run per user and the latest snapshot of each run."""

    def __init__(
        self,
        *,
        controller_factory: ControllerFactory,
        quota_tracker_factory: QuotaTrackerFactory,
        page_size: int = 50,
        page_cost: int = 2,
    ) -> None:
        self._controller_factory = controller_factory
        self._quota_tracker_factory = quota_tracker_factory
        self._page_size = page_size
        self._page_cost = page_cost
        self._sessions: dict[str, _SyncSession] = {}

    def start(self, user_id: str, config: SyncConfiguration) -> ProgressSnapshot:
        config.validate()
        existing = self._sessions.get(user_id)
        if existing is not None and existing.task is not None and not existing.task.done():
            raise SyncAlreadyRunningError(
                f"A sync run is already {existing.controller.state.phase} for this user."
            )
        config = fit_to_quota(
            config,
            self.quota_status(user_id).remaining,
            page_size=self._page_size,
            page_cost=self._page_cost,
        )

        reporter = ProgressReporter()
        controller = self._controller_factory(user_id, reporter)
        session = _SyncSession(controller=controller, reporter=reporter)

        def _remember(snapshot: ProgressSnapshot) -> None:
            session.latest = snapshot

        session.unsubscribe = reporter.subscribe(_remember)
        session.task = asyncio.get_running_loop().create_task(
            controller.run(config),
            name=f"catalog-sync-{user_id}",
        )
        session.task.add_done_callback(lambda task: self._on_run_done(user_id, task))
        self._sessions[user_id] = session
        LOGGER.info(
            "sync session started user_id=%s run_id=%s mode=%s",
            user_id,
            controller.run_id,
            config.mode,
        )
        return controller.snapshot("Sync scheduled")

    def pause(self, user_id: str) -> ProgressSnapshot:
        controller = self._require_session(user_id).controller
        controller.pause()
        return controller.snapshot()

    def resume(self, user_id: str) -> ProgressSnapshot:
        controller = self._require_session(user_id).controller
        controller.resume()
        return controller.snapshot()

    def stop(self, user_id: str) -> ProgressSnapshot:
        controller = self._require_session(user_id).controller
        controller.stop()
        return controller.snapshot()

    def snapshot(self, user_id: str) -> ProgressSnapshot:
        session = self._require_session(user_id)
        if session.latest is not None:
            return session.latest
        return session.controller.snapshot()

    def is_running(self, user_id: str) -> bool:
        session = self._sessions.get(user_id)
        return session is not None and session.task is not None and not session.task.done()

    async def wait(self, user_id: str) -> ProgressSnapshot:
        session = self._require_session(user_id)
        if session.task is None:
            return session.controller.snapshot()
        return await session.task

    def quota_status(self, user_id: str) -> QuotaStatus:
        return self._quota_tracker_factory(user_id).status()

    async def shutdown(self) -> None:
        tasks: list[asyncio.Task[ProgressSnapshot]] = []
        for user_id, session in self._sessions.items():
            if session.task is None or session.task.done():
                continue
            LOGGER.info("stopping sync session on shutdown user_id=%s", user_id)
            session.controller.stop()
            tasks.append(session.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _require_session(self, user_id: str) -> _SyncSession:
        session = self._sessions.get(user_id)
        if session is None:
            raise SyncSessionNotFoundError("No sync run exists for this user.")
        return session

    def _on_run_done(self, user_id: str, task: asyncio.Task[ProgressSnapshot]) -> None:
        session = self._sessions.get(user_id)
        if session is not None and session.unsubscribe is not None and session.task is task:
            session.unsubscribe()
            session.latest = session.controller.snapshot()
        if task.cancelled():
            LOGGER.warning("sync session cancelled user_id=%s", user_id)
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("sync session crashed user_id=%s error=%s", user_id, exc)
