#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv

from spendcube.errors import PipelineError
from spendcube.orchestrator import PipelineOrchestrator, session_summary


def _load_records(path: Path) -> list[dict]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        payload = payload.get("records", [])
    if not isinstance(payload, list):
        raise ValueError("input must be a JSON list of records or an object with a 'records' list")
    return payload


async def _run(args: argparse.Namespace) -> dict:
    orchestrator = PipelineOrchestrator.from_env()
    state = await orchestrator.submit(
        args.session_id,
        _load_records(Path(args.input)),
        args.intent,
        enrich=args.enrich,
    )
    return session_summary(state, tracker=orchestrator.tracker)


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a JSON file of spend records through the pipeline.")
    parser.add_argument("--input", required=True, help="JSON file: list of records or {'records': [...]}")
    parser.add_argument("--session-id", default="cli", help="session id used for the checkpoint")
    parser.add_argument("--intent", default="", help="request text, e.g. 'classify and analyze savings'")
    parser.add_argument("--enrich", action="store_true", help="run vendor enrichment after review")
    parser.add_argument("--env-file", default=".env", help="dotenv file path")
    args = parser.parse_args()

    load_dotenv(args.env_file)
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        summary = asyncio.run(_run(args))
    except PipelineError as exc:
        print(json.dumps({"success": False, "error": {"code": exc.code, "message": exc.message}}, ensure_ascii=True))
        return 1
    print(json.dumps({"success": True, "data": summary}, ensure_ascii=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
