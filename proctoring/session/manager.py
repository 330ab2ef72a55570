"""
SessionManager — the proctoring session state machine.

    pending ──start──→ active ──pause──→ paused ──resume──→ active
                         │                  │
                         ├──complete────────┴──→ completed
                         └──terminate (teacher or auto policy)──→ terminated

Completed and terminated are final; any transition attempted on them is a
no-op returning False. The store performs each transition as a
compare-and-set, so a teacher terminate racing an auto-terminate leaves
exactly one winner.

Every detection result becomes an event. Results at or above the exam's
violation threshold also become violations, high/critical ones raise an
alert, and a critical one terminates the session when the exam enables
auto-termination. All of that is a single store transaction.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from proctoring import schemas
from proctoring.config import Settings, get_settings
from proctoring.detection.types import DetectionResult, InterventionType, SessionStatus, Severity
from proctoring.events import EventChannel, Subscription
from proctoring.store.proctoring_store import ProctoringStore

logger = logging.getLogger(__name__)

# action → (target status, statuses it may be applied from)
_INTERVENTION_TRANSITIONS = {
    InterventionType.WARNING:   (None, ()),
    InterventionType.PAUSE:     (SessionStatus.PAUSED, (SessionStatus.ACTIVE,)),
    InterventionType.TERMINATE: (SessionStatus.TERMINATED, (SessionStatus.PENDING,
                                                            SessionStatus.ACTIVE,
                                                            SessionStatus.PAUSED)),
}


@dataclass(frozen=True)
class SessionPolicy:
    violation_threshold: Severity
    auto_terminate:      bool


class SessionManager:
    def __init__(self, store: ProctoringStore, settings: Settings | None = None, publisher: Any = None) -> None:
        self.store     = store
        self.settings  = settings or get_settings()
        self.publisher = publisher
        self.alerts:        EventChannel[schemas.AlertNotice]  = EventChannel("alerts")
        self.interventions: EventChannel[schemas.Intervention] = EventChannel("interventions")
        self._policies: dict[str, SessionPolicy] = {}

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def create_session(
        self,
        exam_id:     str,
        student_id:  str,
        device_info: dict[str, Any] | None = None,
    ) -> schemas.Session:
        return await asyncio.to_thread(self.store.create_session, exam_id, student_id, device_info)

    async def get_session(self, session_id: str) -> schemas.Session:
        return await asyncio.to_thread(self.store.require_session, session_id)

    async def record_consent(self, session_id: str, device_info: dict[str, Any] | None = None) -> schemas.Session:
        return await asyncio.to_thread(self.store.record_consent, session_id, device_info)

    async def start_session(self, session_id: str) -> bool:
        return await self._transition(session_id, SessionStatus.ACTIVE, (SessionStatus.PENDING,))

    async def pause_session(self, session_id: str) -> bool:
        return await self._transition(session_id, SessionStatus.PAUSED, (SessionStatus.ACTIVE,))

    async def resume_session(self, session_id: str) -> bool:
        return await self._transition(session_id, SessionStatus.ACTIVE, (SessionStatus.PAUSED,))

    async def complete_session(self, session_id: str) -> bool:
        changed = await self._transition(
            session_id, SessionStatus.COMPLETED, (SessionStatus.ACTIVE, SessionStatus.PAUSED),
        )
        self._policies.pop(session_id, None)
        return changed

    async def terminate_session(self, session_id: str) -> bool:
        changed = await self._transition(
            session_id, SessionStatus.TERMINATED,
            (SessionStatus.PENDING, SessionStatus.ACTIVE, SessionStatus.PAUSED),
        )
        self._policies.pop(session_id, None)
        return changed

    async def _transition(self, session_id: str, target: SessionStatus,
                          allowed_from: tuple[SessionStatus, ...]) -> bool:
        return await asyncio.to_thread(self.store.transition, session_id, target, allowed_from)

    # ── Detections ────────────────────────────────────────────────────────────

    async def handle_detection(self, session_id: str, result: DetectionResult) -> schemas.DetectionOutcome:
        """
        Record one detection result. Raises PersistenceError when the write
        still fails after its retry.
        """
        policy  = await self.policy(session_id)
        outcome = await asyncio.to_thread(
            self.store.record_detection,
            session_id,
            result,
            policy.violation_threshold,
            policy.auto_terminate,
        )
        if not outcome.accepted:
            logger.debug("Detection %s for session %s ignored: session not active",
                         result.event_type.value, session_id)
            return outcome

        if outcome.alert is not None:
            session = await asyncio.to_thread(self.store.get_session, session_id)
            await self._announce_alert(schemas.AlertNotice.from_alert(outcome.alert, session))

        if outcome.terminated:
            logger.warning("Session %s auto-terminated on critical %s",
                           session_id, result.event_type.value)
            self._policies.pop(session_id, None)
            if outcome.intervention is not None:
                await self._announce_intervention(outcome.intervention)
        return outcome

    async def policy(self, session_id: str) -> SessionPolicy:
        cached = self._policies.get(session_id)
        if cached is not None:
            return cached
        exam_settings = await asyncio.to_thread(self.store.get_session_settings, session_id)
        if exam_settings is None:
            policy = SessionPolicy(Severity(self.settings.violation_threshold), auto_terminate=False)
        else:
            policy = SessionPolicy(exam_settings.violation_threshold, exam_settings.auto_terminate_on_critical)
        self._policies[session_id] = policy
        return policy

    def bind_engine(self, engine, session_id: str) -> Subscription:
        """Route every result the engine emits into ``handle_detection``."""
        async def _forward(result: DetectionResult) -> None:
            await self.handle_detection(session_id, result)

        return engine.on_detection(_forward)

    # ── Interventions ─────────────────────────────────────────────────────────

    async def send_intervention(
        self,
        session_id: str,
        message:    str,
        action:     InterventionType = InterventionType.WARNING,
        issued_by:  str | None = None,
        alert_id:   str | None = None,
    ) -> schemas.Intervention | None:
        """
        warning   → logged only
        pause     → active → paused
        terminate → terminated, ended_at set

        Returns None when the session is already finished (no-op).
        """
        target, allowed = _INTERVENTION_TRANSITIONS[action]
        intervention, transitioned = await asyncio.to_thread(
            self.store.record_intervention,
            session_id, action, message, issued_by, alert_id, target, allowed,
        )
        if intervention is None:
            logger.info("Intervention %s on finished session %s ignored", action.value, session_id)
            return None

        if target is not None and transitioned:
            logger.info("Session %s → %s by %s", session_id, target.value, issued_by or "policy")
        if action is InterventionType.TERMINATE:
            self._policies.pop(session_id, None)
        await self._announce_intervention(intervention)
        return intervention

    # ── Review ────────────────────────────────────────────────────────────────

    async def review_violation(
        self,
        violation_id:      str,
        reviewer_id:       str,
        notes:             str | None = None,
        is_false_positive: bool | None = None,
        action_taken:      str | None = None,
    ) -> schemas.Violation | None:
        return await asyncio.to_thread(
            self.store.review_violation, violation_id, reviewer_id, notes, is_false_positive, action_taken,
        )

    # ── Notifications ─────────────────────────────────────────────────────────

    async def _announce_alert(self, notice: schemas.AlertNotice) -> None:
        await self.alerts.publish(notice)
        if self.publisher is not None:
            await asyncio.to_thread(self.publisher.publish_alert, notice)

    async def _announce_intervention(self, intervention: schemas.Intervention) -> None:
        await self.interventions.publish(intervention)
        if self.publisher is not None:
            await asyncio.to_thread(self.publisher.publish_intervention, intervention)
