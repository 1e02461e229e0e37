#!/usr/bin/env python3
"""Run the intake pipeline over saved messages.

Usage:
  python scripts/run_pipeline.py mail1.eml mail2.eml ...
  python scripts/run_pipeline.py --mode always --out results.json inbox/*.eml
  python scripts/run_pipeline.py message.json        # API-shaped JSON

Prints one summary line per message and, with --out, writes the full
PipelineResult of every message as a JSON list.
"""
import argparse
import email
import json
import os
import sys
from email import policy

# Ensure repo root is in path
REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, REPO_ROOT)

from logging_config import setup_logging  # noqa: E402
from src.auto.pipeline import PipelineContext, run_batch  # noqa: E402
from src.core.config import LLM_MODES, load_settings  # noqa: E402
from src.core.models import InboundMessage  # noqa: E402


def load_message(path: str) -> InboundMessage:
    if path.lower().endswith(".json"):
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        data.setdefault("id", os.path.basename(path))
        return InboundMessage.from_dict(data)
    with open(path, "rb") as f:
        msg = email.message_from_bytes(f.read(), policy=policy.compat32)
    return InboundMessage.from_email(msg, msg_id=os.path.basename(path))


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Classify and extract saved RFQ messages.")
    parser.add_argument("paths", nargs="+", help=".eml or .json message files")
    parser.add_argument("--mode", choices=LLM_MODES, help="override LLM_MODE")
    parser.add_argument("--workers", type=int, help="override PIPELINE_WORKERS")
    parser.add_argument("--out", help="write full results as JSON here")
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args(argv)

    setup_logging(level=args.log_level, log_file=False)

    settings = load_settings()
    if args.mode:
        settings = settings.with_mode(args.mode)
    context = PipelineContext.from_settings(settings)

    messages, failed = [], 0
    for path in args.paths:
        try:
            messages.append(load_message(path))
        except (OSError, ValueError, json.JSONDecodeError) as e:
            print(f"  SKIP {path}: {e}", file=sys.stderr)
            failed += 1

    results = run_batch(messages, context, max_workers=args.workers)

    for r in results:
        items = sum(len(req.items) for req in r.requests)
        flag = " [review]" if any(req.needs_review for req in r.requests) or r.verdict.needs_review else ""
        print(f"{r.message_id}: {r.verdict.verdict.value}: {len(r.requests)} requests, {items} items{flag}")
        for w in r.warnings:
            print(f"    ⚠ {w}")

    if args.out:
        with open(args.out, "w", encoding="utf-8") as f:
            json.dump([r.to_dict() for r in results], f, indent=2, default=str, ensure_ascii=False)
        print(f"Wrote {len(results)} results to {args.out}")

    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
