"""
hotcert — ACME certificate renewal engine, CLI entry point.

Usage:
  python main.py --once                  # Evaluate once; renew if due, then exit
  python main.py --serve                 # Challenge responder + hourly renewal loop
  python main.py --status                # Show the stored certificate
  python main.py --once --domains a.com b.com   # Override managed domains
"""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading

import structlog

# ── Logging setup ─────────────────────────────────────────────────────────────

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = structlog.get_logger("hotcert")


# ── Engine wiring ─────────────────────────────────────────────────────────────


def build_engine(domains: list[str] | None = None):
    """Validate options and wire the orchestrator; exits on bad configuration."""
    from config import RenewalOptions, settings
    from errors import ConfigurationInvalid
    from renewal.hooks import LoggingHook, load_hooks
    from renewal.orchestrator import RenewalOrchestrator

    try:
        options = RenewalOptions.from_settings(settings, domains=domains)
        hooks = [LoggingHook()] + load_hooks(settings.HOOKS)
    except ConfigurationInvalid as exc:
        log.error("invalid configuration", error=str(exc))
        sys.exit(2)

    return RenewalOrchestrator.from_settings(settings, options, hooks=hooks)


def run_once(domains: list[str] | None = None) -> int:
    """Load the stored certificate, run a single tick and report the outcome."""
    from renewal.orchestrator import TickOutcome

    engine = build_engine(domains)
    engine.load_current()
    outcome = engine.tick()
    current = engine.cache.current()
    log.info(
        "run complete",
        outcome=outcome.value,
        domains=list(current.domains) if current else None,
        not_after=current.not_after.isoformat() if current else None,
    )
    return 1 if outcome is TickOutcome.FAILED else 0


def run_serve(domains: list[str] | None = None) -> int:
    """Serve HTTP-01 challenges and keep the renewal loop running until signalled."""
    from acmeclient.http_challenge import ChallengeResponder
    from config import settings

    engine = build_engine(domains)
    responder = ChallengeResponder(engine.challenge_store, port=settings.HTTP_CHALLENGE_PORT)
    stopped = threading.Event()

    def _handle_signal(signum: int, _frame: object) -> None:
        log.info("shutdown requested", signal=signal.Signals(signum).name)
        stopped.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    responder.start()
    try:
        engine.start()
        log.info("engine running — press Ctrl+C to stop")
        stopped.wait()
    finally:
        engine.stop(timeout=settings.ORDER_POLL_TIMEOUT)
        responder.stop()
    return 0


def show_status() -> int:
    from config import settings
    from errors import StorageUnavailable
    from renewal.cache import ActiveCertificate
    from renewal.orchestrator import build_stores
    from storage.base import SITE_KEY

    cert_store, _ = build_stores(settings)
    try:
        data = cert_store.get(SITE_KEY)
    except StorageUnavailable as exc:
        log.error("certificate store unavailable", error=str(exc))
        return 1
    if data is None:
        print("No certificate stored yet.")
        return 0
    try:
        handle = ActiveCertificate.from_pfx(data, settings.PFX_PASSWORD)
    except ValueError as exc:
        print(f"Stored certificate is unreadable: {exc}")
        return 1
    print(f"Domains:   {', '.join(handle.domains)}")
    print(f"Not before: {handle.metadata.not_before.isoformat()}")
    print(f"Not after:  {handle.metadata.not_after.isoformat()}")
    print(f"Expired:    {'yes' if handle.is_expired() else 'no'}")
    return 0


# ── CLI ───────────────────────────────────────────────────────────────────────


def main() -> None:
    parser = argparse.ArgumentParser(
        description="ACME certificate renewal engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --once
  python main.py --serve
  python main.py --status
  python main.py --once --domains example.com www.example.com
        """,
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Evaluate the renewal policy once, renew if due, and exit",
    )
    parser.add_argument(
        "--serve",
        action="store_true",
        help="Run the challenge responder and the renewal loop until interrupted",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Print the stored certificate's domains and validity window",
    )
    parser.add_argument(
        "--domains",
        nargs="+",
        metavar="DOMAIN",
        help="Override MANAGED_DOMAINS for this run",
    )

    args = parser.parse_args()

    if args.status:
        sys.exit(show_status())
    elif args.once:
        sys.exit(run_once(domains=args.domains))
    elif args.serve:
        sys.exit(run_serve(domains=args.domains))

    parser.print_help()
    sys.exit(1)


if __name__ == "__main__":
    main()
