"""Configuration loader for Concord."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict
import os
import yaml

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "default.yaml"
USER_CONFIG_PATH = Path.home() / ".config" / "concord" / "config.yaml"
DEFAULT_SCENARIOS_PATH = Path(__file__).resolve().parent.parent / "config" / "scenarios.yaml"


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config() -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    if DEFAULT_CONFIG_PATH.exists():
        data = yaml.safe_load(DEFAULT_CONFIG_PATH.read_text()) or {}
    if USER_CONFIG_PATH.exists():
        override = yaml.safe_load(USER_CONFIG_PATH.read_text()) or {}
        data = _deep_merge(data, override)

    # Environment overrides - Data directory
    data_dir = os.getenv("CONCORD_DATA_DIR")
    if data_dir:
        data["data_dir"] = data_dir

    # Environment overrides - Models
    model = os.getenv("CONCORD_MODEL")
    if model:
        phases = data.setdefault("models", {}).setdefault("phases", {})
        for phase in ("elicitation", "synthesis", "party"):
            phases[phase] = model
    base_url = os.getenv("CONCORD_BASE_URL")
    if base_url:
        data.setdefault("models", {})["base_url"] = base_url

    # Environment overrides - Negotiation settings
    max_rounds = os.getenv("CONCORD_MAX_ROUNDS")
    if max_rounds:
        try:
            data.setdefault("negotiation", {})["max_rounds"] = int(max_rounds)
        except ValueError:
            pass

    run_timeout = os.getenv("CONCORD_TIMEOUT")
    if run_timeout:
        try:
            data.setdefault("negotiation", {})["timeout_seconds"] = float(run_timeout)
        except ValueError:
            pass

    return data


@dataclass
class Config:
    raw: Dict[str, Any]

    @property
    def data_dir(self) -> Path:
        default = str(Path.home() / ".concord")
        return Path(self.raw.get("data_dir", default)).expanduser()

    @property
    def models(self) -> Dict[str, Any]:
        return self.raw.get("models", {}) or {}

    @property
    def dispatch(self) -> Dict[str, Any]:
        return self.raw.get("dispatch", {}) or {}

    @property
    def negotiation(self) -> Dict[str, Any]:
        return self.raw.get("negotiation", {}) or {}

    @property
    def scenarios_path(self) -> Path:
        path = self.raw.get("scenarios_path")
        return Path(path) if path else DEFAULT_SCENARIOS_PATH

    def phase_model(self, phase: str) -> str:
        phases = self.models.get("phases", {}) or {}
        return str(phases.get(phase) or self.models.get("default_model", "llama-3.1-8b-instant"))

    @property
    def max_rounds(self) -> int:
        return int(self.negotiation.get("max_rounds", 3))

    @property
    def elicitation_max_turns(self) -> int:
        return int(self.negotiation.get("elicitation_max_turns", 5))

    @property
    def run_timeout_seconds(self) -> float:
        """Maximum wall-clock time for a single negotiation run. Default 10 minutes."""
        return float(self.negotiation.get("timeout_seconds", 600))

    @property
    def proposal_policy(self) -> str:
        policy = str(self.negotiation.get("proposal_policy", "first")).strip().lower()
        return policy if policy in {"first", "most_addressed"} else "first"

    @property
    def success_defaults(self) -> Dict[str, Any]:
        return self.negotiation.get("success", {}) or {}


def get_config() -> Config:
    return Config(load_config())
