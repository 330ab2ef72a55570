"""
Duration-based escalation for conditions that only matter when sustained
(no face in frame, gaze off screen).

    tick →  condition active?  ── no ──→ reset start marker, emit nothing
                  │ yes
            start marker set? ── no ──→ set it to now
                  │
            elapsed ≤ grace        → nothing (short blips never fire)
            elapsed > grace        → MEDIUM, once per episode
            elapsed > grace + high → HIGH (requires alert), once per episode

A tier is reported once per episode, so a student who stays away for a
minute produces one medium and one high event rather than one per tick.
"""
from __future__ import annotations

from dataclasses import dataclass

from proctoring.detection.types import Severity


@dataclass(frozen=True)
class Escalation:
    severity:       Severity
    duration:       float      # seconds since the condition started
    requires_alert: bool


class DurationEscalator:
    def __init__(self, grace_period: float, high_severity_after: float) -> None:
        self.grace_period        = grace_period
        self.high_severity_after = high_severity_after
        self._started_at: float | None = None
        self._reported:   Severity | None = None

    @property
    def active_since(self) -> float | None:
        return self._started_at

    def observe(self, active: bool, now: float) -> Escalation | None:
        """Feed one tick; returns the escalation to emit, if any."""
        if not active:
            self.reset()
            return None

        if self._started_at is None:
            self._started_at = now

        duration = now - self._started_at
        if duration <= self.grace_period:
            return None

        if duration - self.grace_period > self.high_severity_after:
            severity = Severity.HIGH
        else:
            severity = Severity.MEDIUM

        if self._reported is not None and self._reported.at_least(severity):
            return None

        self._reported = severity
        return Escalation(
            severity       = severity,
            duration       = round(duration, 2),
            requires_alert = severity is Severity.HIGH,
        )

    def reset(self) -> None:
        self._started_at = None
        self._reported   = None
