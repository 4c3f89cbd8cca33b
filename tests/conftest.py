import json
import pathlib
import random
import re
import sys

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from spendcube.orchestrator import PipelineOrchestrator
from spendcube.rubric import RUBRIC_DIMENSIONS
from spendcube.settings import PipelineSettings

_FIELD_RE = re.compile(r"^- (?P<key>[A-Za-z ]+): (?P<value>.*)$", re.MULTILINE)


def prompt_field(prompt: str, key: str) -> str:
    for match in _FIELD_RE.finditer(prompt):
        if match.group("key") == key:
            return match.group("value").strip()
    return ""


class ScriptedGenerator:
    """Answers by prompt kind with per-description overrides and scripted failures.

    ``failures`` maps ``(kind, description)`` to exceptions raised in order,
    one per call, before a normal answer is returned.
    """

    def __init__(
        self,
        *,
        confidence: float = 85.0,
        score: float = 85.0,
        code: str = "43211503",
        title: str = "Notebook computers",
        confidence_by_description: dict | None = None,
        scores_by_description: dict | None = None,
        raw_by_description: dict | None = None,
        failures: dict | None = None,
    ):
        self.confidence = confidence
        self.score = score
        self.code = code
        self.title = title
        self.confidence_by_description = confidence_by_description or {}
        self.scores_by_description = scores_by_description or {}
        self.raw_by_description = raw_by_description or {}
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.calls: list[tuple[str, str]] = []

    @staticmethod
    def kind_of(system_prompt: str) -> str:
        lowered = system_prompt.lower()
        if "qa judge" in lowered:
            return "qa"
        if "enrichment" in lowered:
            return "enrichment"
        return "classification"

    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        kind = self.kind_of(system_prompt)
        description = prompt_field(user_prompt, "Description")
        self.calls.append((kind, description))

        pending = self.failures.get((kind, description))
        if pending:
            raise pending.pop(0)
        raw = self.raw_by_description.get((kind, description))
        if raw is not None:
            return raw

        if kind == "classification":
            return json.dumps(
                {
                    "code": self.code,
                    "title": self.title,
                    "confidence": self.confidence_by_description.get(description, self.confidence),
                    "reasoning": "scripted",
                }
            )
        if kind == "qa":
            scores = self.scores_by_description.get(description, self.score)
            if not isinstance(scores, dict):
                scores = {d.key: scores for d in RUBRIC_DIMENSIONS}
            return json.dumps(
                {
                    "dimensions": [
                        {"dimension": key, "score": value, "reasoning": "scripted"} for key, value in scores.items()
                    ],
                    "issues": [],
                    "reasoning": "scripted rubric",
                }
            )
        return json.dumps(
            {
                "company_type": "Private",
                "industry": "Technology",
                "risk_level": "low",
                "spend_type": "capex",
                "strategic_importance": "routine",
                "consolidation_opportunity": True,
                "insights": ["scripted"],
            }
        )

    def count(self, kind: str) -> int:
        return sum(1 for k, _ in self.calls if k == kind)


def make_records(count: int, *, amount: float = 1200.0) -> list[dict]:
    return [
        {
            "id": f"r{i}",
            "vendor": f"Vendor {i}",
            "description": f"laptop order {i}",
            "amount": amount,
            "date": "2024-03-01",
        }
        for i in range(1, count + 1)
    ]


@pytest.fixture
def settings() -> PipelineSettings:
    return PipelineSettings(rate_limit_max_tokens=1000, rate_limit_refill_per_s=1000.0)


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep


@pytest.fixture
def make_orchestrator(settings, fake_sleep):
    def _make(generator, **overrides) -> PipelineOrchestrator:
        overrides.setdefault("settings", settings)
        overrides.setdefault("sleep", fake_sleep)
        overrides.setdefault("rng", random.Random(7))
        return PipelineOrchestrator(generator=generator, **overrides)

    return _make


@pytest.fixture
def scripted():
    return ScriptedGenerator


@pytest.fixture
def records():
    return make_records
