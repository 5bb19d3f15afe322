#!/usr/bin/env python3
"""Run a full evaluation in-process, one batch after another, without Celery."""
from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from evalharness.config import get_settings
from evalharness.log_setup import configure_logging
from evalharness.models.base import SessionLocal
from evalharness.services.batch_runner import BatchRunner


def _no_chain(run_id: str, offset: int, authorization: Optional[str] = None) -> None:
    return None


def run_inline(
    runner: BatchRunner,
    run_type: str = "manual",
    authorization: Optional[str] = None,
    run_id: Optional[str] = None,
) -> Dict[str, Any]:
    outcome = runner.run_batch(run_id=run_id, run_type=run_type, authorization=authorization)
    while outcome.status != "completed":
        outcome = runner.run_batch(run_id=outcome.run_id, authorization=authorization)
    return outcome.as_payload()


def main() -> None:
    parser = argparse.ArgumentParser(description="Evaluate every active question against the assistant.")
    parser.add_argument("--run-type", choices=["manual", "scheduled"], default="manual")
    parser.add_argument("--run-id", default=None, help="Finish an existing running run from its checkpoint.")
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--authorization", default=os.environ.get("EVAL_AUTHORIZATION"))
    parser.add_argument("--out", default=None)
    args = parser.parse_args()

    configure_logging(get_settings().log_level)
    db = SessionLocal()
    try:
        runner = BatchRunner(db, scheduler=_no_chain, batch_size=args.batch_size)
        payload = run_inline(runner, args.run_type, args.authorization, args.run_id)
    finally:
        db.close()

    if args.out:
        out_path = Path(args.out)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(json.dumps(payload, indent=2))
    print(json.dumps(payload, indent=2))


if __name__ == "__main__":
    main()
