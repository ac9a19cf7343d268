"""Scenario and persona definitions loaded from YAML."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

import yaml

from concord.convergence import SuccessCriteria
from concord.state import Persona

logger = logging.getLogger(__name__)


@dataclass
class Scenario:
    id: str
    name: str
    outcome: str
    creator: str
    personas: List[Persona]
    description: str = ""
    difficulty: str = "easy"
    expected_convergence: bool = True
    success: SuccessCriteria = field(default_factory=SuccessCriteria)

    def to_summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "difficulty": self.difficulty,
            "expected_convergence": self.expected_convergence,
            "personas": [p.name for p in self.personas],
        }


def parse_scenarios(data: Dict[str, Any], defaults: SuccessCriteria | None = None) -> List[Scenario]:
    library: Dict[str, Persona] = {}
    for persona_id, definition in (data.get("personas") or {}).items():
        library[persona_id] = Persona.from_dict({"id": persona_id, **(definition or {})})

    scenarios = []
    for definition in data.get("scenarios") or []:
        personas = []
        for entry in definition.get("personas") or []:
            if isinstance(entry, dict):
                personas.append(Persona.from_dict(entry))
            elif entry in library:
                personas.append(library[entry])
            else:
                raise ValueError(f"scenario {definition.get('id')}: unknown persona {entry!r}")
        scenarios.append(Scenario(
            id=str(definition["id"]),
            name=str(definition.get("name") or definition["id"]),
            outcome=str(definition["outcome"]),
            creator=str(definition.get("creator") or (personas[0].id if personas else "")),
            personas=personas,
            description=str(definition.get("description") or "").strip(),
            difficulty=str(definition.get("difficulty", "easy")),
            expected_convergence=bool(definition.get("expected_convergence", True)),
            success=SuccessCriteria.from_dict(definition.get("success"), defaults),
        ))
    return scenarios


def load_scenarios(path: Path, defaults: SuccessCriteria | None = None) -> List[Scenario]:
    if not path.exists():
        logger.warning("Scenario file not found: %s", path)
        return []
    data = yaml.safe_load(path.read_text()) or {}
    return parse_scenarios(data, defaults)


def find_scenario(scenarios: List[Scenario], scenario_id: str) -> Scenario | None:
    for scenario in scenarios:
        if scenario.id == scenario_id:
            return scenario
    return None
