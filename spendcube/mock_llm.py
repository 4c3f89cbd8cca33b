"""
Deterministic offline text generator.

Enabled when MOCK_LLM_ENABLED=true (the default).  Outputs are derived from a
sha256 of the prompt fields, so the same record always gets the same answer.
"""

from __future__ import annotations

import hashlib
import json
import os
import re
from collections.abc import Mapping
from typing import Any

from spendcube import taxonomy

_FIELD_RE = re.compile(r"^- (?P<key>[A-Za-z ]+): (?P<value>.*)$", re.MULTILINE)


def is_mock_llm_enabled(environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    return str(env.get("MOCK_LLM_ENABLED", "true")).strip().lower() == "true"


def _deterministic_float(seed: str, min_val: float = 0.0, max_val: float = 1.0) -> float:
    h = hashlib.sha256(seed.encode()).hexdigest()
    val = int(h[:8], 16) / 0xFFFFFFFF
    return min_val + val * (max_val - min_val)


def _prompt_fields(user_prompt: str) -> dict[str, str]:
    return {m.group("key").strip().lower(): m.group("value").strip() for m in _FIELD_RE.finditer(user_prompt)}


def mock_classification(fields: Mapping[str, str]) -> dict[str, Any]:
    vendor = fields.get("vendor", "")
    description = fields.get("description", "")
    seed = f"classify::{vendor}::{description}"
    candidates = taxonomy.search(f"{vendor} {description}", 3)
    if not candidates:
        return {
            "code": "80101500",
            "title": "Business consulting services",
            "confidence": round(_deterministic_float(seed, 35, 55), 1),
            "reasoning": "No strong keyword match; defaulted to a generic services code.",
            "alternative_codes": [],
        }
    best = candidates[0]
    confidence = round(min(98.0, 60 + best["score"] * 30 + _deterministic_float(seed, 0, 10)), 1)
    return {
        "code": best["code"],
        "title": best["title"],
        "segment": best.get("segment"),
        "family": best.get("family"),
        "confidence": confidence,
        "reasoning": f"Description keywords align with '{best['title']}'.",
        "alternative_codes": [
            {"code": c["code"], "title": c["title"], "confidence": round(c["score"] * 100, 1)}
            for c in candidates[1:]
        ],
    }


def mock_rubric(fields: Mapping[str, str]) -> dict[str, Any]:
    seed = f"rubric::{fields.get('vendor', '')}::{fields.get('description', '')}::{fields.get('code', '')}"
    try:
        confidence = float(fields.get("confidence", "80").rstrip("%"))
    except ValueError:
        confidence = 80.0
    # Scores track the classifier's confidence so weak classifications are flagged.
    base = max(30.0, min(95.0, confidence))
    keys = (
        "codeAccuracy",
        "levelAppropriateness",
        "confidenceCalibration",
        "descriptionMatch",
        "vendorConsistency",
        "amountReasonableness",
    )
    dims = []
    for key in keys:
        score = round(max(0.0, min(100.0, base + _deterministic_float(f"{seed}::{key}", -5, 5))), 1)
        dims.append({"dimension": key, "score": score, "reasoning": f"Mock evaluation of {key}."})
    return {"dimensions": dims, "issues": [], "reasoning": "Deterministic mock rubric evaluation."}


def mock_enrichment(fields: Mapping[str, str]) -> dict[str, Any]:
    vendor = fields.get("vendor", "")
    seed = f"enrich::{vendor}"
    risk = ("low", "medium", "high")[int(_deterministic_float(seed, 0, 2.999))]
    return {
        "company_type": "Other",
        "industry": fields.get("segment", "Unknown") or "Unknown",
        "risk_level": risk,
        "spend_type": "indirect",
        "strategic_importance": "routine",
        "consolidation_opportunity": _deterministic_float(seed + "::consolidate") > 0.5,
        "insights": [f"Mock enrichment for {vendor or 'unknown vendor'}."],
    }


class MockGenerator:
    """Implements ``generate(system_prompt, user_prompt)`` without any network call."""

    model = "mock"

    def __init__(self) -> None:
        self.calls = 0

    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        self.calls += 1
        fields = _prompt_fields(user_prompt)
        system_lower = system_prompt.lower()
        if "qa judge" in system_lower:
            payload = mock_rubric(fields)
        elif "enrichment" in system_lower:
            payload = mock_enrichment(fields)
        else:
            payload = mock_classification(fields)
        return json.dumps(payload, ensure_ascii=False)
