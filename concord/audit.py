"""Append-only JSONL audit trail for a negotiation run."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List
import json
import time


@dataclass
class AuditLog:
    path: Path
    run_id: str | None = None

    def log(self, event: str, data: Dict[str, Any] | None = None) -> None:
        payload = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S"),
            "run_id": self.run_id,
            "event": event,
            "data": data or {},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, default=str) + "\n")

    def read(self, event: str | None = None) -> List[Dict[str, Any]]:
        """Entries in write order, optionally only those named ``event``."""
        if not self.path.exists():
            return []
        with self.path.open("r", encoding="utf-8") as handle:
            entries = [json.loads(line) for line in handle if line.strip()]
        if event is not None:
            entries = [e for e in entries if e.get("event") == event]
        return entries
