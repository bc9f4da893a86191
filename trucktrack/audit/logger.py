"""Webhook audit trail: JSON Lines, hash-chained, rotated by size."""

from __future__ import annotations

import fcntl
import hashlib
import json
from dataclasses import dataclass
from pathlib import Path

from trucktrack.models import AuditEvent, AuditEventType, RiskLevel


def _line_hash(line: str) -> str:
    return hashlib.sha256(line.encode()).hexdigest()


@dataclass
class ChainValidationResult:
    valid: bool
    broken_at_line: int | None = None


def validate_audit_chain(log_path: Path) -> ChainValidationResult:
    """Check that every entry's prev_hash matches the line before it."""
    text = log_path.read_text().strip()
    if not text:
        return ChainValidationResult(valid=True)

    previous: str | None = None
    for number, line in enumerate(text.split("\n"), start=1):
        expected = _line_hash(previous) if previous is not None else None
        if json.loads(line).get("prev_hash") != expected:
            return ChainValidationResult(valid=False, broken_at_line=number)
        previous = line

    return ChainValidationResult(valid=True)


class AuditLogger:
    """Append-only audit log for webhook decisions."""

    def __init__(
        self,
        log_path: str,
        max_bytes: int = 10_485_760,
        backup_count: int = 5,
    ) -> None:
        self.log_path = Path(log_path)
        self._max_bytes = max_bytes
        self._backup_count = backup_count
        self._last_line: str | None = None
        # Continue the chain from an existing file
        if self.log_path.exists():
            existing = self.log_path.read_text().strip()
            if existing:
                self._last_line = existing.rsplit("\n", 1)[-1]

    def _backup(self, index: int) -> Path:
        return self.log_path.with_name(f"{self.log_path.name}.{index}")

    def _rotate_if_needed(self) -> None:
        if not self.log_path.exists() or self.log_path.stat().st_size < self._max_bytes:
            return

        self._backup(self._backup_count).unlink(missing_ok=True)
        for index in range(self._backup_count - 1, 0, -1):
            if self._backup(index).exists():
                self._backup(index).rename(self._backup(index + 1))
        self.log_path.rename(self._backup(1))

    def log(self, event: AuditEvent) -> None:
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

        data = json.loads(event.model_dump_json())
        data["prev_hash"] = _line_hash(self._last_line) if self._last_line is not None else None
        line = json.dumps(data, separators=(",", ":"))

        lock_path = self.log_path.with_name(f".{self.log_path.name}.lock")
        with open(lock_path, "w") as lock:
            fcntl.flock(lock, fcntl.LOCK_EX)
            try:
                self._rotate_if_needed()
                with open(self.log_path, "a") as f:
                    f.write(line + "\n")
            finally:
                fcntl.flock(lock, fcntl.LOCK_UN)

        self._last_line = line

    def record(
        self,
        event_type: AuditEventType,
        action: str,
        result: str,
        risk_level: RiskLevel = RiskLevel.INFO,
        phone_number: str | None = None,
        source_ip: str | None = None,
        **details: object,
    ) -> None:
        """Shorthand for logging an event built from keyword details."""
        self.log(AuditEvent(
            event_type=event_type,
            action=action,
            result=result,
            risk_level=risk_level,
            phone_number=phone_number,
            source_ip=source_ip,
            details=details or None,
        ))
