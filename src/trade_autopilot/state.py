from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from .errors import InvalidTransition
from .models import Performance, _iso, utcnow


BotStatus = Literal["STOPPED", "RUNNING", "PAUSED", "ERROR"]

BOT_TRANSITIONS: dict[str, set[str]] = {
    "STOPPED": {"RUNNING", "ERROR"},
    "RUNNING": {"PAUSED", "STOPPED", "ERROR"},
    "PAUSED": {"RUNNING", "STOPPED", "ERROR"},
    "ERROR": {"STOPPED"},
}
MAX_NOTES = 50


@dataclass
class RuntimeState:
    status: BotStatus = "STOPPED"
    status_reason: str = ""
    last_scan_started_at: datetime | None = None
    last_scan_finished_at: datetime | None = None
    consecutive_scan_failures: int = 0
    consecutive_execution_failures: int = 0
    drawdown_breach_streak: int = 0
    emergency_stops: int = 0
    last_error: str | None = None
    performance: Performance = field(default_factory=Performance)
    notes: list[str] = field(default_factory=list)

    @property
    def is_running(self) -> bool:
        return self.status == "RUNNING"

    def transition(self, new_status: BotStatus, reason: str = "") -> None:
        if new_status == self.status:
            return
        if new_status not in BOT_TRANSITIONS[self.status]:
            raise InvalidTransition(f"Bot cannot go from {self.status} to {new_status}")
        self.status = new_status
        self.status_reason = reason

    def mark_start(self) -> None:
        self.last_scan_started_at = utcnow()

    def mark_finish(self) -> None:
        self.last_scan_finished_at = utcnow()

    def add_note(self, note: str) -> None:
        self.notes.append(note)
        del self.notes[:-MAX_NOTES]

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "status_reason": self.status_reason,
            "last_scan_started_at": _iso(self.last_scan_started_at),
            "last_scan_finished_at": _iso(self.last_scan_finished_at),
            "consecutive_scan_failures": self.consecutive_scan_failures,
            "consecutive_execution_failures": self.consecutive_execution_failures,
            "drawdown_breach_streak": self.drawdown_breach_streak,
            "emergency_stops": self.emergency_stops,
            "last_error": self.last_error,
            "performance": self.performance.to_dict(),
            "notes": list(self.notes[-10:]),
        }
