"""
Image Batch — Command Line

Usage:
    # Classify a directory of images with one backend
    python -m batch_coordinator.cli run ./images --provider gemini --output results.jsonl

    # Continue an interrupted batch (already-recorded items are skipped)
    python -m batch_coordinator.cli run ./images --provider gemini --output results.jsonl --resume

    # Inspect a result log and its checkpoint
    python -m batch_coordinator.cli status results.jsonl

    # List configured backends
    python -m batch_coordinator.cli backends

Exit codes:
    0  batch reached a terminal state, or shut down cleanly
    1  setup error (no backend, no work items, bad paths)
    2  fatal resource or result-log condition
"""

from __future__ import annotations

import argparse
import json
import sys
from collections import Counter

from batch_coordinator.inputs import load_work_items
from batch_coordinator.orchestrator import PipelineOrchestrator
from batch_engine.backends import build_registry
from batch_engine.config import load_config, load_settings
from batch_engine.errors import BatchSetupError, LedgerWriteError, ResourceExhausted
from batch_engine.ledger import ResultLedger
from batch_engine.logging import configure_logging
from batch_engine.progress import ProgressStats, format_progress

EXIT_OK = 0
EXIT_SETUP = 1
EXIT_FATAL = 2


def _load(args):
    cfg = load_config(base_path=args.config or None)
    settings = load_settings(cfg)
    level = args.log_level or settings.log_level
    configure_logging(level=level, json_format=settings.log_json)
    return settings


def _render_line(stats: ProgressStats) -> None:
    print("\r" + format_progress(stats), end="", file=sys.stderr, flush=True)


def cmd_run(args) -> int:
    """Run a batch through the pipeline."""
    try:
        settings = _load(args)
    except (OSError, ValueError) as e:
        print(f"Error: cannot load config: {e}", file=sys.stderr)
        return EXIT_SETUP

    registry = build_registry(settings)
    provider = args.provider or settings.default_backend
    if not provider:
        print("Error: no backend selected (use --provider or pipeline.default_backend)", file=sys.stderr)
        return EXIT_SETUP
    if provider not in registry:
        print(f"Error: backend '{provider}' is not configured "
              f"(available: {', '.join(registry.names())})", file=sys.stderr)
        return EXIT_SETUP

    try:
        inputs = load_work_items(args.source, recursive=args.recursive)
    except (BatchSetupError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_SETUP
    if not inputs.items:
        print(f"Error: no work items found in {args.source}", file=sys.stderr)
        return EXIT_SETUP

    print(f"\n{'═' * 70}", file=sys.stderr)
    print(f"  BATCH: {len(inputs.items)} items → {provider}", file=sys.stderr)
    print(f"  output: {args.output}{'  (resume)' if args.resume else ''}", file=sys.stderr)
    print(f"{'═' * 70}", file=sys.stderr, flush=True)

    orch = PipelineOrchestrator(
        settings,
        log_path=args.output,
        renderer=None if args.no_progress else _render_line,
        install_signal_handlers=True,
    )
    try:
        report = orch.run(
            inputs.items,
            registry.get(provider),
            resume=args.resume,
            overwrite=args.overwrite,
            concurrency=args.concurrency,
        )
    except BatchSetupError as e:
        print(f"\n  ✗ SETUP FAILED: {e}", file=sys.stderr)
        return EXIT_SETUP
    except (LedgerWriteError, ResourceExhausted) as e:
        print(f"\n  ✗ FATAL: {e}", file=sys.stderr)
        print("  Progress saved; rerun with --resume to continue.", file=sys.stderr)
        return EXIT_FATAL
    finally:
        registry.close()

    summary = report.summary()
    if not args.no_progress:
        print(file=sys.stderr)
    print(f"\n{'═' * 70}", file=sys.stderr)
    print("  BATCH SUMMARY", file=sys.stderr)
    print(f"{'─' * 70}", file=sys.stderr)
    print(f"  session:     {summary['session_id']}", file=sys.stderr)
    print(f"  status:      {summary['status']}", file=sys.stderr)
    print(f"  completed:   {summary['completed']}/{summary['total']}", file=sys.stderr)
    print(f"  successful:  {summary['successful']}", file=sys.stderr)
    print(f"  failed:      {summary['failed']}", file=sys.stderr)
    print(f"  skipped:     {summary['skipped']}", file=sys.stderr)
    if summary["unprocessed"]:
        print(f"  unprocessed: {summary['unprocessed']} (rerun with --resume)", file=sys.stderr)
    print(f"  cost:        ${summary['cost_usd']:.4f}", file=sys.stderr)
    print(f"  elapsed:     {summary['elapsed_s']:.1f}s", file=sys.stderr)
    print(f"{'═' * 70}\n", file=sys.stderr)

    print(json.dumps(summary, indent=2, default=str))
    return EXIT_OK


def cmd_status(args) -> int:
    """Show checkpoint and log counts for a result log."""
    session = ResultLedger.load_session(args.output)
    outcomes = ResultLedger.load_previous_outcomes(args.output)
    if session is None and not outcomes:
        print(f"No result log or checkpoint found for {args.output}", file=sys.stderr)
        return EXIT_SETUP

    counts = Counter(o.status.value for o in outcomes.values())
    status = {
        "checkpoint": session.to_dict() if session else None,
        "log": {
            "records": len(outcomes),
            "success": counts.get("success", 0),
            "failed": counts.get("failed", 0),
            "skipped": counts.get("skipped", 0),
        },
    }
    if session is not None:
        status["consistent"] = session.is_consistent and session.completed_items == len(outcomes)
    print(json.dumps(status, indent=2))
    return EXIT_OK


def cmd_backends(args) -> int:
    """List configured backends with their dispatch and pricing settings."""
    try:
        settings = _load(args)
    except (OSError, ValueError) as e:
        print(f"Error: cannot load config: {e}", file=sys.stderr)
        return EXIT_SETUP
    registry = build_registry(settings)

    print(f"\nBackends ({len(registry)})")
    print(f"{'─' * 70}")
    for name in registry.names():
        dispatch = settings.dispatch_for(name)
        pricing = settings.pricing.get(name)
        marker = "●" if name == settings.default_backend else " "
        line = f"  {marker} {name:12s} concurrency={dispatch.concurrency}"
        if dispatch.requests_per_minute:
            line += f" rpm={dispatch.requests_per_minute}"
        if pricing is not None:
            line += f"  ~${pricing.estimate():.5f}/image"
        print(line)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="image-batch",
        description="Image Batch — batch image classification pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", help="Config YAML (default: batch_config.yaml)")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR")

    subs = parser.add_subparsers(dest="command", help="Command")

    # run
    run_p = subs.add_parser("run", help="Classify a batch of images")
    run_p.add_argument("source", help="Directory, CSV, JSON or JSONL file")
    run_p.add_argument("--provider", "-p", help="Backend name")
    run_p.add_argument("--concurrency", "-c", type=int, help="Override backend concurrency")
    run_p.add_argument("--output", "-o", default="results.jsonl", help="Result log path")
    run_p.add_argument("--resume", "-r", action="store_true", help="Skip items already in the log")
    run_p.add_argument("--overwrite", action="store_true", help="Replace an existing log")
    run_p.add_argument("--recursive", action="store_true", help="Scan subdirectories")
    run_p.add_argument("--no-progress", action="store_true", help="Disable the progress line")

    # status
    status_p = subs.add_parser("status", help="Show result log status")
    status_p.add_argument("output", help="Result log path")

    # backends
    subs.add_parser("backends", help="List configured backends")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return EXIT_SETUP

    if args.command == "run":
        if args.concurrency is not None and args.concurrency < 1:
            print("Error: --concurrency must be >= 1", file=sys.stderr)
            return EXIT_SETUP
        return cmd_run(args)
    if args.command == "status":
        return cmd_status(args)
    if args.command == "backends":
        return cmd_backends(args)
    parser.print_help()
    return EXIT_SETUP


if __name__ == "__main__":
    sys.exit(main())
