"""Persistent store for negotiation runs."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List
from datetime import datetime
import json
import logging
import time
import uuid
try:
    import fcntl  # type: ignore
except ImportError:  # pragma: no cover - non-POSIX environments
    fcntl = None

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


@dataclass
class RunStore:
    data_dir: Path

    def _runs_dir(self) -> Path:
        return self.data_dir / "runs"

    def run_dir(self, run_id: str) -> Path:
        return self._runs_dir() / run_id

    def _latest_path(self) -> Path:
        return self.data_dir / "latest.json"

    def create_run(self, scenario_id: str, outcome: str, meta: Dict[str, Any] | None = None) -> str:
        run_id = time.strftime("%Y%m%d-%H%M%S") + "-" + uuid.uuid4().hex[:6]
        payload = {
            "id": run_id,
            "created_at": _now(),
            "status": "running",
            "scenario_id": scenario_id,
            "outcome": outcome,
            "meta": meta or {},
            "events": [],
        }
        self._write_run(run_id, payload)
        return run_id

    def append_event(self, run_id: str, event: Dict[str, Any]) -> None:
        def _update(run: Dict[str, Any]) -> Dict[str, Any]:
            run.setdefault("events", []).append({"timestamp": _now(), **event})
            return run
        self._locked_update(run_id, _update)

    def finalize_run(self, run_id: str, result: Dict[str, Any]) -> None:
        """Record a finished run. Diverged and cancelled runs are finished runs too."""
        def _update(run: Dict[str, Any]) -> Dict[str, Any]:
            run["status"] = result.get("status", "complete")
            run["completed_at"] = _now()
            run["result"] = result
            return run
        run = self._locked_update(run_id, _update)
        if not run:
            return
        self._latest_path().parent.mkdir(parents=True, exist_ok=True)
        self._latest_path().write_text(json.dumps(run, indent=2))

    def fail_run(self, run_id: str, error: str) -> None:
        def _update(run: Dict[str, Any]) -> Dict[str, Any]:
            run["status"] = "failed"
            run["error"] = error
            run["completed_at"] = _now()
            return run
        self._locked_update(run_id, _update)

    def get_run(self, run_id: str) -> Dict[str, Any] | None:
        path = self._runs_dir() / run_id / "run.json"
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text())
        except (OSError, ValueError):
            logger.warning("Unreadable run record %s", path)
            return None

    def latest(self) -> Dict[str, Any] | None:
        if not self._latest_path().exists():
            return None
        try:
            return json.loads(self._latest_path().read_text())
        except (OSError, ValueError):
            return None

    def list_runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        runs: List[Dict[str, Any]] = []
        if not self._runs_dir().exists():
            return runs
        for run_dir in sorted(self._runs_dir().iterdir(), reverse=True)[:limit]:
            path = run_dir / "run.json"
            if not path.exists():
                continue
            try:
                runs.append(json.loads(path.read_text()))
            except (OSError, ValueError):
                continue
        return runs

    def _write_run(self, run_id: str, payload: Dict[str, Any]) -> None:
        run_dir = self._runs_dir() / run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        path = run_dir / "run.json"
        path.write_text(json.dumps(payload, indent=2))

    def _locked_update(self, run_id: str, updater: Callable[[Dict[str, Any]], Dict[str, Any]]) -> Dict[str, Any] | None:
        path = self._runs_dir() / run_id / "run.json"
        if not path.exists():
            return None
        if fcntl is None:
            run = self.get_run(run_id)
            if not run:
                return None
            updated = updater(run)
            self._write_run(run_id, updated)
            return updated
        with path.open("r+", encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                handle.seek(0)
                data = handle.read()
                if not data.strip():
                    return None
                run = json.loads(data)
                updated = updater(run)
                handle.seek(0)
                handle.truncate()
                handle.write(json.dumps(updated, indent=2))
                return updated
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
