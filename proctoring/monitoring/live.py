"""
LiveMonitoringAggregator — a teacher's near-real-time view of one exam.

Risk status is derived on read, never stored:

    critical  any unresolved alert is critical
    warning   any unresolved high alert, or total_violations above the limit
    normal    otherwise

The refresh loop is push-first: it sleeps on the AlertFeed and wakes as soon
as an alert arrives. While the feed has no live source it falls back to
polling every ``monitor_poll_interval`` seconds.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from proctoring import schemas
from proctoring.config import Settings, get_settings
from proctoring.detection.types import ALERT_SEVERITIES, InterventionType, SessionStatus, Severity
from proctoring.monitoring.feed import AlertFeed, FeedListener
from proctoring.session.manager import SessionManager
from proctoring.store.proctoring_store import ProctoringStore

logger = logging.getLogger(__name__)

LIVE_STATUSES = (SessionStatus.ACTIVE, SessionStatus.PAUSED)


class RiskStatus(str, Enum):
    NORMAL   = "normal"
    WARNING  = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class MonitoredSession:
    session:           schemas.Session
    status:            RiskStatus
    unresolved_alerts: int

    def to_dict(self) -> dict[str, Any]:
        s = self.session
        return {
            "sessionId":        s.id,
            "studentId":        s.student_id,
            "sessionStatus":    s.status.value,
            "riskStatus":       self.status.value,
            "startedAt":        s.started_at.isoformat() if s.started_at else None,
            "lastActivityAt":   s.last_activity_at.isoformat() if s.last_activity_at else None,
            "totalEvents":      s.total_events,
            "flaggedEvents":    s.flagged_events,
            "totalViolations":  s.total_violations,
            "unresolvedAlerts": self.unresolved_alerts,
        }


@dataclass
class ExamSnapshot:
    exam_id:        str
    sessions:       list[MonitoredSession] = field(default_factory=list)
    pending_alerts: list[schemas.Alert]    = field(default_factory=list)

    def count(self, status: RiskStatus) -> int:
        return sum(1 for s in self.sessions if s.status is status)


def classify(session: schemas.Session, unresolved: list[schemas.Alert], warning_violations: int) -> RiskStatus:
    if any(a.severity is Severity.CRITICAL for a in unresolved):
        return RiskStatus.CRITICAL
    if any(a.severity is Severity.HIGH for a in unresolved) or session.total_violations > warning_violations:
        return RiskStatus.WARNING
    return RiskStatus.NORMAL


Notifier = Callable[[schemas.AlertNotice], Any]
SnapshotListener = Callable[[ExamSnapshot], Any]


class LiveMonitoringAggregator:
    def __init__(
        self,
        exam_id:     str,
        store:       ProctoringStore,
        manager:     SessionManager,
        feed:        AlertFeed | None = None,
        notifier:    Notifier | None = None,
        on_refresh:  SnapshotListener | None = None,
        settings:    Settings | None = None,
    ) -> None:
        self.exam_id    = exam_id
        self.store      = store
        self.manager    = manager
        self.feed       = feed
        self.notifier   = notifier
        self.on_refresh = on_refresh
        self.settings   = settings or get_settings()
        self.snapshot:  ExamSnapshot | None = None

        self._task:     asyncio.Task | None = None
        self._listener: FeedListener | None = None
        self._dispatches: set[asyncio.Task] = set()

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def get_active_exam_sessions(self, exam_id: str | None = None) -> list[MonitoredSession]:
        exam_id = exam_id or self.exam_id
        sessions = await asyncio.to_thread(self.store.list_exam_sessions, exam_id, LIVE_STATUSES)
        alerts = await asyncio.to_thread(self.store.unresolved_alerts, [s.id for s in sessions])

        by_session: dict[str, list[schemas.Alert]] = {}
        for alert in alerts:
            by_session.setdefault(alert.session_id, []).append(alert)

        limit = self.settings.warning_violation_count
        return [
            MonitoredSession(
                session           = s,
                status            = classify(s, by_session.get(s.id, []), limit),
                unresolved_alerts = len(by_session.get(s.id, [])),
            )
            for s in sessions
        ]

    async def get_pending_alerts(self, exam_id: str | None = None) -> list[schemas.Alert]:
        return await asyncio.to_thread(self.store.pending_alerts_for_exam, exam_id or self.exam_id)

    async def refresh(self) -> ExamSnapshot:
        sessions, alerts = await asyncio.gather(self.get_active_exam_sessions(), self.get_pending_alerts())
        self.snapshot = ExamSnapshot(exam_id=self.exam_id, sessions=sessions, pending_alerts=alerts)
        if self.on_refresh is not None:
            outcome = self.on_refresh(self.snapshot)
            if asyncio.iscoroutine(outcome):
                await outcome
        return self.snapshot

    # ── Actions ───────────────────────────────────────────────────────────────

    async def acknowledge_alert(self, alert_id: str, teacher_id: str | None = None) -> schemas.Alert | None:
        return await asyncio.to_thread(self.store.acknowledge_alert, alert_id, teacher_id)

    async def resolve_alert(self, alert_id: str, teacher_id: str | None = None,
                            notes: str | None = None) -> schemas.Alert | None:
        return await asyncio.to_thread(self.store.resolve_alert, alert_id, teacher_id, notes)

    def send_intervention(
        self,
        session_id: str,
        message:    str,
        action:     InterventionType = InterventionType.WARNING,
        teacher_id: str | None = None,
        alert_id:   str | None = None,
    ) -> asyncio.Task:
        """Dispatch through the session manager without waiting on it."""
        task = asyncio.get_running_loop().create_task(
            self.manager.send_intervention(session_id, message, action, teacher_id, alert_id),
            name=f"intervention-{session_id}",
        )
        self._dispatches.add(task)
        task.add_done_callback(self._dispatch_done)
        return task

    def _dispatch_done(self, task: asyncio.Task) -> None:
        self._dispatches.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Intervention dispatch failed: %s", task.exception())

    # ── Refresh loop ──────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        if self.feed is not None:
            self._listener = self.feed.listen()
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"live-monitor-{self.exam_id}",
        )
        logger.info("Live monitoring started for exam %s", self.exam_id)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if self._listener is not None:
            self._listener.close()
            self._listener = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("Live monitoring stopped for exam %s", self.exam_id)

    def _wait_timeout(self) -> float:
        if self._listener is not None and self.feed is not None and self.feed.connected:
            return self.settings.monitor_push_heartbeat
        return self.settings.monitor_poll_interval

    async def _run(self) -> None:
        while True:
            try:
                await self.refresh()
            except Exception as exc:
                logger.warning("Live monitoring refresh failed for exam %s: %s", self.exam_id, exc)

            notices = await self._wait_for_change()
            for notice in notices:
                await self._notify(notice)

    async def _wait_for_change(self) -> list[schemas.AlertNotice]:
        timeout = self._wait_timeout()
        if self._listener is None:
            await asyncio.sleep(timeout)
            return []
        notices = await self._listener.next_batch(timeout)
        return [n for n in notices if n.exam_id in (None, self.exam_id)]

    async def _notify(self, notice: schemas.AlertNotice) -> None:
        if self.notifier is None or notice.severity not in ALERT_SEVERITIES:
            return
        try:
            outcome = self.notifier(notice)
            if asyncio.iscoroutine(outcome):
                await outcome
        except Exception as exc:
            logger.warning("Alert notifier failed for %s: %s", notice.alert_id, exc)
