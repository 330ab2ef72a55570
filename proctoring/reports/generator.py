"""
ReportGenerator — reduces one session's history into statistics and a
rendered report.

build() is pure: it only reads what it is given. Both the JSON body and the
HTML document are rendered from the same ReportStatistics, so the two
formats can never disagree.
"""
from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from html import escape
from typing import Any

from proctoring import schemas
from proctoring.detection.types import VIOLATION_SEVERITIES
from proctoring.store.proctoring_store import ProctoringStore
from proctoring.timeline import as_utc, format_elapsed, utcnow, video_offset

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = ("json", "html")
NO_VIOLATIONS_TEXT = "No violations detected during this session."


@dataclass(frozen=True)
class ReportStatistics:
    total_events:           int
    flagged_events:         int
    total_violations:       int
    violations_by_severity: dict[str, int]
    violations_by_type:     dict[str, int]
    session_duration:       int             # seconds
    average_confidence:     float           # 0 when no event carries a confidence
    total_alerts:           int = 0
    total_interventions:    int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalEvents":          self.total_events,
            "flaggedEvents":        self.flagged_events,
            "totalViolations":      self.total_violations,
            "violationsBySeverity": dict(self.violations_by_severity),
            "violationsByType":     dict(self.violations_by_type),
            "sessionDuration":      self.session_duration,
            "averageConfidence":    round(self.average_confidence, 4),
            "totalAlerts":          self.total_alerts,
            "totalInterventions":   self.total_interventions,
        }


@dataclass(frozen=True)
class TimelineEntry:
    kind:     str               # event | violation | alert | intervention
    at:       datetime
    offset:   float | None      # seconds since session start
    label:    str
    severity: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind":     self.kind,
            "at":       self.at.isoformat(),
            "offset":   self.offset,
            "label":    self.label,
            "severity": self.severity,
        }


@dataclass(frozen=True)
class ProctoringReport:
    session:       schemas.Session
    statistics:    ReportStatistics
    events:        list[schemas.Event]        = field(default_factory=list)
    violations:    list[schemas.Violation]    = field(default_factory=list)
    alerts:        list[schemas.Alert]        = field(default_factory=list)
    interventions: list[schemas.Intervention] = field(default_factory=list)
    timeline:      list[TimelineEntry]        = field(default_factory=list)
    generated_at:  datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session":       self.session.model_dump(mode="json"),
            "statistics":    self.statistics.to_dict(),
            "events":        [e.model_dump(mode="json") for e in self.events],
            "violations":    [v.model_dump(mode="json") for v in self.violations],
            "alerts":        [a.model_dump(mode="json") for a in self.alerts],
            "interventions": [i.model_dump(mode="json") for i in self.interventions],
            "timeline":      [t.to_dict() for t in self.timeline],
            "generatedAt":   self.generated_at.isoformat(),
        }


@dataclass(frozen=True)
class ReportResponse:
    status:       str           # ok | not_found | not_implemented
    format:       str
    content_type: str = "application/json"
    body:         Any = None
    message:      str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


# ── Pure reduction ────────────────────────────────────────────────────────────

def build(
    session:       schemas.Session,
    events:        list[schemas.Event],
    violations:    list[schemas.Violation],
    alerts:        list[schemas.Alert] | None = None,
    interventions: list[schemas.Intervention] | None = None,
    now:           datetime | None = None,
) -> ProctoringReport:
    alerts        = alerts or []
    interventions = interventions or []
    now           = now or utcnow()

    by_severity = {s.value: 0 for s in VIOLATION_SEVERITIES}
    for v in violations:
        by_severity[v.severity.value] = by_severity.get(v.severity.value, 0) + 1
    by_type = dict(Counter(v.violation_type.value for v in violations))

    confidences = [e.ai_confidence for e in events if e.ai_confidence is not None]
    average = sum(confidences) / len(confidences) if confidences else 0.0

    statistics = ReportStatistics(
        total_events           = len(events),
        flagged_events         = sum(1 for e in events if e.flagged),
        total_violations       = len(violations),
        violations_by_severity = by_severity,
        violations_by_type     = by_type,
        session_duration       = _duration(session, now),
        average_confidence     = average,
        total_alerts           = len(alerts),
        total_interventions    = len(interventions),
    )
    return ProctoringReport(
        session       = session,
        statistics    = statistics,
        events        = list(events),
        violations    = list(violations),
        alerts        = list(alerts),
        interventions = list(interventions),
        timeline      = _timeline(session, events, violations, alerts, interventions),
        generated_at  = now,
    )


def _duration(session: schemas.Session, now: datetime) -> int:
    if session.started_at is None:
        return 0
    end = session.ended_at or now
    return max(0, int((as_utc(end) - as_utc(session.started_at)).total_seconds()))


def _timeline(session, events, violations, alerts, interventions) -> list[TimelineEntry]:
    start = session.started_at
    entries = [
        TimelineEntry("event", e.detected_at, video_offset(e.detected_at, start),
                      e.description or _humanize(e.event_type.value), e.severity.value)
        for e in events
    ]
    entries += [
        TimelineEntry("violation", v.detected_at, video_offset(v.detected_at, start),
                      v.description or _humanize(v.violation_type.value), v.severity.value)
        for v in violations
    ]
    entries += [
        TimelineEntry("alert", a.created_at, video_offset(a.created_at, start), a.title, a.severity.value)
        for a in alerts
    ]
    entries += [
        TimelineEntry("intervention", i.sent_at, video_offset(i.sent_at, start),
                      f"{i.intervention_type.value}: {i.message}")
        for i in interventions
    ]
    entries.sort(key=lambda t: as_utc(t.at))
    return entries


def _humanize(value: str) -> str:
    return " ".join(w.capitalize() for w in value.split("_"))


# ── Rendering ─────────────────────────────────────────────────────────────────

_STYLE = """
    body { font-family: Arial, sans-serif; margin: 40px; line-height: 1.6; }
    h1 { color: #333; border-bottom: 2px solid #333; padding-bottom: 10px; }
    h2 { color: #666; margin-top: 30px; }
    .header { background: #f4f4f4; padding: 20px; margin-bottom: 30px; }
    .stat { display: inline-block; margin: 10px 20px 10px 0; }
    .stat-label { font-weight: bold; color: #666; }
    .stat-value { font-size: 24px; color: #333; }
    table { width: 100%; border-collapse: collapse; margin: 20px 0; }
    th, td { border: 1px solid #ddd; padding: 12px; text-align: left; }
    th { background-color: #f4f4f4; font-weight: bold; }
    .severity-low { color: #3b82f6; }
    .severity-medium { color: #eab308; }
    .severity-high { color: #f97316; }
    .severity-critical { color: #ef4444; font-weight: bold; }
    .footer { margin-top: 50px; padding-top: 20px; border-top: 1px solid #ddd; color: #666; font-size: 12px; }
"""


def render_html(report: ProctoringReport) -> str:
    session, stats = report.session, report.statistics
    started = session.started_at.isoformat() if session.started_at else "Not started"
    ended   = session.ended_at.isoformat() if session.ended_at else "In Progress"

    def stat(label: str, value: Any) -> str:
        return (f'<div class="stat"><div class="stat-label">{escape(label)}</div>'
                f'<div class="stat-value">{escape(str(value))}</div></div>')

    severity_rows = "".join(
        f'<tr><td class="severity-{escape(sev)}">{escape(sev.upper())}</td><td>{count}</td></tr>'
        for sev, count in stats.violations_by_severity.items()
    )
    type_rows = "".join(
        f"<tr><td>{escape(_humanize(kind))}</td><td>{count}</td></tr>"
        for kind, count in sorted(stats.violations_by_type.items())
    )

    if report.violations:
        rows = "".join(
            "<tr>"
            f"<td>{escape(format_elapsed(video_offset(v.detected_at, session.started_at)))}</td>"
            f"<td>{escape(v.violation_type.value)}</td>"
            f'<td class="severity-{escape(v.severity.value)}">{escape(v.severity.value.upper())}</td>'
            f"<td>{escape(v.description or '')}</td>"
            f"<td>{_percent(v.ai_confidence)}</td>"
            f"<td>{'&#10003;' if v.reviewed else '&#10007;'}</td>"
            "</tr>"
            for v in report.violations
        )
        details = (
            "<h2>Detailed Violations</h2><table>"
            "<tr><th>Time</th><th>Type</th><th>Severity</th><th>Description</th>"
            "<th>Confidence</th><th>Reviewed</th></tr>"
            f"{rows}</table>"
        )
    else:
        details = f"<p>{NO_VIOLATIONS_TEXT}</p>"

    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="UTF-8">
  <title>Proctoring Report - {escape(session.id)}</title>
  <style>{_STYLE}</style>
</head>
<body>
  <h1>Proctoring Session Report</h1>
  <div class="header">
    <p><strong>Student:</strong> {escape(session.student_id)}</p>
    <p><strong>Exam:</strong> {escape(session.exam_id)}</p>
    <p><strong>Session ID:</strong> {escape(session.id)}</p>
    <p><strong>Start Time:</strong> {escape(started)}</p>
    <p><strong>End Time:</strong> {escape(ended)}</p>
    <p><strong>Duration:</strong> {stats.session_duration // 60} minutes {stats.session_duration % 60} seconds</p>
    <p><strong>Status:</strong> {escape(session.status.value.upper())}</p>
  </div>
  <h2>Session Statistics</h2>
  <div>
    {stat("Total Events", stats.total_events)}
    {stat("Flagged Events", stats.flagged_events)}
    {stat("Violations", stats.total_violations)}
    {stat("AI Confidence", _percent(stats.average_confidence))}
  </div>
  <h2>Violations by Severity</h2>
  <table><tr><th>Severity</th><th>Count</th></tr>{severity_rows}</table>
  <h2>Violations by Type</h2>
  <table><tr><th>Type</th><th>Count</th></tr>{type_rows}</table>
  {details}
  <div class="footer">
    <p>Report generated on {escape(report.generated_at.isoformat())}</p>
  </div>
</body>
</html>
"""


def _percent(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value * 100:.1f}%"


# ── Store-backed entry point ──────────────────────────────────────────────────

class ReportGenerator:
    def __init__(self, store: ProctoringStore) -> None:
        self.store = store

    def load(self, session_id: str, now: datetime | None = None) -> ProctoringReport | None:
        session = self.store.get_session(session_id)
        if session is None:
            return None
        return build(
            session,
            self.store.list_events(session_id),
            self.store.list_violations(session_id),
            self.store.list_alerts(session_id),
            self.store.list_interventions(session_id),
            now,
        )

    async def generate(self, session_id: str, fmt: str = "json") -> ReportResponse:
        fmt = (fmt or "json").lower()
        if fmt not in SUPPORTED_FORMATS:
            return ReportResponse(
                status="not_implemented", format=fmt,
                message=f"{fmt.upper()} report generation not implemented",
            )

        report = await asyncio.to_thread(self.load, session_id)
        if report is None:
            return ReportResponse(status="not_found", format=fmt, message="Session not found")

        logger.info("Generated %s report for session %s (%d violations)",
                    fmt, session_id, report.statistics.total_violations)
        if fmt == "html":
            return ReportResponse(status="ok", format=fmt, content_type="text/html", body=render_html(report))
        return ReportResponse(status="ok", format=fmt, body=report.to_dict())
