"""Deterministic cleansing of input records before classification.

Normalization never mutates a record; it returns a new ``InputRecord`` under
the same id with the submitted vendor kept in ``raw_vendor``.
"""

from __future__ import annotations

import dataclasses
import re
from collections.abc import Iterable, Mapping
from typing import Any

from spendcube.models import InputRecord

_WS_RE = re.compile(r"\s+")
_LEGAL_SUFFIX_RE = re.compile(
    r"[,\s]+(inc|incorporated|corp|corporation|llc|l\.l\.c|ltd|limited|co|company|plc|gmbh|s\.a|ag)\.?$",
    re.IGNORECASE,
)
_AMOUNT_STRIP_RE = re.compile(r"[^\d.\-]")

VENDOR_ALIASES: dict[str, str] = {
    "msft": "Microsoft",
    "microsoft": "Microsoft",
    "aws": "Amazon Web Services",
    "amazon aws": "Amazon Web Services",
    "amazon web services": "Amazon Web Services",
    "amazon.com": "Amazon",
    "amzn": "Amazon",
    "goog": "Google",
    "google": "Google",
    "alphabet": "Google",
    "ibm": "IBM",
    "international business machines": "IBM",
    "dell technologies": "Dell",
    "dell": "Dell",
    "hp": "HP",
    "hewlett packard": "HP",
    "hewlett-packard": "HP",
    "cisco systems": "Cisco",
    "cisco": "Cisco",
    "salesforce.com": "Salesforce",
    "salesforce": "Salesforce",
}


def collapse_whitespace(text: str | None) -> str:
    return _WS_RE.sub(" ", str(text or "")).strip()


def strip_legal_suffix(name: str) -> str:
    previous = None
    current = name
    while previous != current:
        previous = current
        current = _LEGAL_SUFFIX_RE.sub("", current).strip()
    return current or name


def normalize_vendor(vendor: str | None) -> str:
    cleaned = collapse_whitespace(vendor)
    if not cleaned:
        return ""
    alias = VENDOR_ALIASES.get(cleaned.lower())
    if alias:
        return alias
    stripped = strip_legal_suffix(cleaned)
    alias = VENDOR_ALIASES.get(stripped.lower())
    if alias:
        return alias
    if stripped.isupper() and len(stripped) > 4:
        return stripped.title()
    return stripped


def coerce_amount(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    negative = text.startswith("(") and text.endswith(")")
    text = _AMOUNT_STRIP_RE.sub("", text)
    if not text or text in {"-", ".", "-."}:
        return 0.0
    try:
        amount = float(text)
    except ValueError:
        return 0.0
    return -abs(amount) if negative else amount


def normalize_record(record: InputRecord) -> InputRecord:
    raw_vendor = record.raw_vendor if record.raw_vendor is not None else record.vendor
    return dataclasses.replace(
        record,
        vendor=normalize_vendor(record.vendor),
        description=collapse_whitespace(record.description),
        amount=coerce_amount(record.amount),
        date=collapse_whitespace(record.date),
        department=collapse_whitespace(record.department) or None,
        raw_vendor=raw_vendor,
    )


def record_from_mapping(data: Mapping[str, Any]) -> InputRecord:
    payload = dict(data)
    if not str(payload.get("id") or "").strip():
        raise ValueError("record id is required")
    payload["id"] = str(payload["id"]).strip()
    payload["amount"] = coerce_amount(payload.get("amount"))
    for key in ("vendor", "description", "date"):
        payload[key] = "" if payload.get(key) is None else str(payload[key])
    return InputRecord.from_dict(payload)


def normalize_records(records: Iterable[InputRecord]) -> list[InputRecord]:
    return [normalize_record(r) for r in records]
