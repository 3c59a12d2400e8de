"""
============================================================================
Stake Reward Distributor v1.0.0
Operator CLI - Daily Reward Distribution
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: .env or environment configuration
Side Effects: Network reads; with --confirm, ledger submissions and
              run store writes

USAGE
-----
    # Compute the payout table, write JSON and text exports (default)
    python scripts/distribute.py preview

    # Settle today's previewed table (DRY_RUN mode settles against a simulated ledger)
    python scripts/distribute.py execute --confirm

    # Discard the preview and recompute before settling
    python scripts/distribute.py execute --confirm --recalc

    # Resend failed lines of a run
    python scripts/distribute.py resend --confirm --run-date 2026-01-15

    # Sample (or full) verification against the ledger event log
    python scripts/distribute.py verify --full --persist

    # Print the stored run summary
    python scripts/distribute.py summary --run-date 2026-01-15

Without --confirm, execute and resend only print what they would do.
Every command prints a JSON document; aborts exit non-zero.

============================================================================
"""

import sys
import argparse
import json
import logging
import signal
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dotenv import load_dotenv
from requests.exceptions import RequestException

from app.config import DistributionConfig
from app.errors import DistributionError
from app.ledger.gateway_client import GatewayError
from app.ledger.signer import SignerError
from app.settlement.batcher import SettlementBatcher
from app.settlement.run_store import RunNotFound
from jobs.distribution_run import DistributionPipeline, RunContext

logger = logging.getLogger("distribute")

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_INTERRUPTED = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Daily reward distribution: preview, execute, resend, verify"
    )
    parser.add_argument("--run-date", help="Run date key (YYYY-MM-DD, default today UTC)")
    parser.add_argument("--log-level", default="INFO", help="Logging level")

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("preview", help="Compute and export the payout table (default)")

    execute = sub.add_parser("execute", help="Settle the payout table")
    execute.add_argument("--confirm", action="store_true", help="Actually submit transfers")
    execute.add_argument("--force", action="store_true", help="Re-run a date that already executed")
    execute.add_argument(
        "--combine-pools", action="store_true",
        help="One transfer per recipient carrying both pool amounts"
    )
    execute.add_argument(
        "--simulate", action="store_true",
        help="Settle against the simulated ledger even in LIVE mode"
    )
    execute.add_argument(
        "--recalc", action="store_true",
        help="Recompute the payout table instead of settling the previewed export"
    )

    resend = sub.add_parser("resend", help="Resend failed and never-sent lines")
    resend.add_argument("--confirm", action="store_true", help="Actually submit transfers")
    resend.add_argument("--recipient", action="append", default=[], help="Limit to this address")
    resend.add_argument(
        "--include-mismatched", action="store_true",
        help="Also resend lines that failed verification"
    )
    resend.add_argument(
        "--include-unconfirmed", action="store_true",
        help="Also resend lines whose send outcome is unknown (SETL-007); check the ledger first"
    )
    resend.add_argument("--simulate", action="store_true", help="Use the simulated ledger")

    verify = sub.add_parser("verify", help="Verify submitted transfers")
    verify.add_argument("--full", action="store_true", help="Check every transfer, not a sample")
    verify.add_argument("--persist", action="store_true", help="Write outcomes to the run store")
    verify.add_argument("--simulate", action="store_true", help="Use the simulated run store")

    summary = sub.add_parser("summary", help="Print the stored run summary")
    summary.add_argument("--simulate", action="store_true", help="Use the simulated run store")

    return parser


def emit(document: dict) -> None:
    print(json.dumps(document, indent=2, default=str))


def run(args: argparse.Namespace) -> int:
    config = DistributionConfig.from_environment()
    if getattr(args, "combine_pools", False):
        config.combine_pools = True

    ctx = RunContext.create(
        config,
        run_date=args.run_date,
        simulate=True if getattr(args, "simulate", False) else None,
    )
    pipeline = DistributionPipeline(config)

    # SIGTERM finishes the current transfer, then stops without a marker
    signal.signal(signal.SIGTERM, lambda signum, frame: pipeline.cancel_event.set())

    command = args.command or "preview"
    logger.info(
        f"[CLI] command={command} | run_date={ctx.run_date} | "
        f"mode={'simulated' if ctx.simulate else 'live'} | correlation_id={ctx.correlation_id}"
    )

    if command == "preview":
        pipeline.preview(ctx)

    elif command == "execute":
        if not args.confirm:
            pipeline.preview(ctx)
            document = ctx.to_dict()
            document["message"] = (
                f"would submit {len(ctx.transfers)} transfers for {len(ctx.records)} lines; "
                f"re-run with --confirm"
            )
            emit(document)
            return EXIT_OK
        pipeline.execute(ctx, force=args.force, recalc=args.recalc)

    elif command == "resend":
        if not args.confirm:
            pipeline.summary(ctx)
            candidates = SettlementBatcher.resend_candidates(
                ctx.records, args.recipient or None, args.include_mismatched,
                args.include_unconfirmed,
            )
            document = ctx.to_dict()
            document["message"] = f"would resend {len(candidates)} lines; re-run with --confirm"
            document["candidates"] = [r.to_dict() for r in candidates]
            emit(document)
            return EXIT_OK
        pipeline.resend(
            ctx, recipients=args.recipient or None,
            include_mismatched=args.include_mismatched,
            include_unconfirmed=args.include_unconfirmed,
        )

    elif command == "verify":
        pipeline.verify(ctx, full=args.full, persist=args.persist)

    elif command == "summary":
        pipeline.summary(ctx)

    emit(ctx.to_dict())
    if ctx.summary is not None and ctx.summary.interrupted:
        return EXIT_INTERRUPTED
    return EXIT_OK


def main() -> int:
    """Main entry point."""
    load_dotenv()
    args = build_parser().parse_args()

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stderr,
    )

    try:
        return run(args)
    except DistributionError as e:
        logger.error(f"[CLI] Aborted | error_code={e.error_code} | error={e.message}")
        emit({"aborted": True, "error_code": e.error_code, "error": e.message})
        return EXIT_ABORTED
    except (RunNotFound, SignerError, GatewayError, RequestException) as e:
        logger.error(f"[CLI] Aborted | error={e}")
        emit({"aborted": True, "error": str(e)})
        return EXIT_ABORTED


if __name__ == "__main__":
    sys.exit(main())
