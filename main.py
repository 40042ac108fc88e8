"""
Financial document intake pipeline: entry point.

Two modes:
  1. process: one or more invoice / KYC files -> recognition -> extraction -> validation
     -> confidence -> decision. Prints one PipelineResult JSON per file.
  2. check-id: validate a GSTIN, PAN or Aadhaar number offline.

Usage:
  python main.py process FILE [FILE ...] [--kind auto|invoice|identity] [--config config.yaml]
                 [--value-override AMOUNT] [--workers N] [--output results.json]
  python main.py check-id 27AAPFU0939F1ZV
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from core.exceptions import ConfigError
from core.models import PipelineResult
from decision.gstin import gstin_problems, is_valid_aadhaar, is_valid_pan
from pipeline.intake_pipeline import build_pipeline
from pipeline.worker_pool import IntakeWorkerPool
from utils.config import load_config
from utils.logger import setup_logging


def _read_bytes(path: Path) -> bytes:
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    return path.read_bytes()


def check_identifier(value: str) -> dict[str, Any]:
    """Classify and validate one identifier by shape."""
    cleaned = "".join(value.split()).upper()
    if len(cleaned) == 15:
        problems = gstin_problems(cleaned)
        return {"id": cleaned, "type": "gstin", "valid": not problems, "problems": problems}
    if len(cleaned) == 10:
        ok = is_valid_pan(cleaned)
        return {"id": cleaned, "type": "pan", "valid": ok, "problems": [] if ok else ["format"]}
    if len(cleaned) == 12 and cleaned.isdigit():
        ok = is_valid_aadhaar(cleaned)
        return {"id": cleaned, "type": "aadhaar", "valid": ok, "problems": [] if ok else ["format"]}
    return {"id": cleaned, "type": "unknown", "valid": False, "problems": ["length"]}


def run_process(args: argparse.Namespace) -> int:
    log = logging.getLogger(__name__)
    config = load_config(args.config)
    if args.log_level:
        setup_logging(args.log_level)
    else:
        setup_logging(config.log_level)

    pipeline = build_pipeline(config)
    paths = [Path(p) for p in args.files]
    results: list[dict[str, Any]] = []
    failed = 0

    workers = args.workers if args.workers is not None else config.workers.max_workers
    if len(paths) == 1 or workers <= 1:
        for path in paths:
            try:
                result = pipeline.process(
                    _read_bytes(path),
                    args.kind,
                    document_id=path.stem,
                    transaction_value=args.value_override,
                )
            except (OSError, ValueError) as e:
                log.error("Failed %s: %s", path, e)
                failed += 1
                continue
            results.append(_result_row(path, result))
    else:
        with IntakeWorkerPool(pipeline, max_workers=workers) as pool:
            # one caller id per file: files are independent documents
            jobs = []
            for path in paths:
                try:
                    data = _read_bytes(path)
                except OSError as e:
                    log.error("Failed %s: %s", path, e)
                    failed += 1
                    continue
                jobs.append(
                    (
                        path,
                        pool.submit(
                            str(path),
                            data,
                            kind_hint=args.kind,
                            document_id=path.stem,
                            transaction_value=args.value_override,
                        ),
                    )
                )
            for path, job in jobs:
                try:
                    results.append(_result_row(path, job.result()))
                except Exception as e:
                    log.error("Failed %s: %s", path, e)
                    failed += 1

    text = json.dumps(results if len(results) != 1 else results[0], indent=2, ensure_ascii=False, default=str)
    if args.output:
        out = Path(args.output)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(text, encoding="utf-8")
        log.info("Saved results to %s", out)
    else:
        print(text)

    auto = sum(1 for r in results if r["decision"]["verdict"] == "auto_approve")
    print(
        f"processed={len(results)} auto_approved={auto} review={len(results) - auto} failed={failed}",
        file=sys.stderr,
    )
    return 1 if failed else 0


def _result_row(path: Path, result: PipelineResult) -> dict[str, Any]:
    row = result.to_dict()
    row["file"] = str(path)
    return row


def run_check_id(args: argparse.Namespace) -> int:
    outcome = check_identifier(args.identifier)
    print(json.dumps(outcome, indent=2))
    return 0 if outcome["valid"] else 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Financial document intake: invoices and KYC documents -> validated, scored, decided records",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("process", help="Run the intake pipeline on document files")
    p.add_argument("files", nargs="+", help="Image or PDF files")
    p.add_argument(
        "--kind",
        default="auto",
        choices=["auto", "invoice", "identity"],
        help="Document kind (default: auto-detect from recognized text)",
    )
    p.add_argument("--config", "-c", default=None, help="YAML config path (default: CONFIG_PATH or config.yaml)")
    p.add_argument(
        "--value-override",
        type=float,
        default=None,
        help="Transaction value for the high-value policy instead of the extracted grand total",
    )
    p.add_argument("--workers", "-w", type=int, default=None, help="Parallel workers for multiple files")
    p.add_argument("--output", "-o", default=None, help="Write JSON results to this file instead of stdout")
    p.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level")
    p.set_defaults(func=run_process)

    c = sub.add_parser("check-id", help="Validate a GSTIN, PAN or Aadhaar number")
    c.add_argument("identifier")
    c.set_defaults(func=run_check_id)

    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
