#!/usr/bin/env python3
"""
Punto Settlement Command Line Interface.

Provides commands for running and operating the settlement engine:
    - serve: Start the API server
    - check: Verify installation and configuration
    - info: Display configuration
    - payout: Pay an issue's pending queue from its treasury
    - resolve: Settle a transfer left BROADCAST
    - reconcile: Find (and optionally repair) ledger gaps

Usage:
    punto serve [--host HOST] [--port PORT] [--debug] [--production]
    punto check
    punto info
    punto payout ISSUE_ID [--yes] [--max N]
    punto resolve ATTEMPT_ID [--abandon]
    punto reconcile [--issue ISSUE_ID] [--repair] [--json]
    punto --version
"""

import argparse
import json
import os
import sys

from dotenv import load_dotenv

__version__ = "0.1.0"


def _bootstrap():
    """Load .env, configure logging and build the engine."""
    load_dotenv()

    from engine import build_engine
    from monitoring import configure_logging
    from settings import Settings

    settings = Settings.from_env()
    configure_logging(level=settings.log_level, json_output=settings.log_format.lower() == "json" or None)
    return build_engine(settings)


def _format_amount(amount: int, currency: str = "USDC", decimals: int = 2) -> str:
    return f"{amount / 10 ** decimals:,.{decimals}f} {currency}"


def cmd_serve(args):
    """Start the Punto Settlement API server."""
    from api import create_app

    engine = _bootstrap()
    flask_app = create_app(engine)

    host = args.host or os.getenv("HOST", "0.0.0.0")
    port = args.port or int(os.getenv("PORT", 5000))
    debug = args.debug or os.getenv("FLASK_DEBUG", "").lower() == "true"

    print(f"Starting Punto Settlement API on {host}:{port}")

    if args.production:
        import gunicorn.app.base

        class StandaloneApplication(gunicorn.app.base.BaseApplication):
            """Gunicorn wrapper serving an already-built Flask app."""

            def __init__(self, app, options=None):
                self.options = options or {}
                self.application = app
                super().__init__()

            def load_config(self):
                for key, value in self.options.items():
                    if key in self.cfg.settings and value is not None:
                        self.cfg.set(key.lower(), value)

            def load(self):
                return self.application

        options = {
            "bind": f"{host}:{port}",
            # Treasury locks are per process
            "workers": args.workers or int(os.getenv("WORKERS", 1)),
            "worker_class": "gthread",
            "threads": int(os.getenv("THREADS", 8)),
            # Payout steps block until the transfer confirms
            "timeout": int(os.getenv("WORKER_TIMEOUT", 600)),
            "accesslog": "-",
            "errorlog": "-",
        }
        StandaloneApplication(flask_app, options).run()
    else:
        flask_app.run(host=host, port=port, debug=debug)
    return 0


def cmd_check(args):
    """Check installation and configuration."""
    print("Punto Settlement Installation Check")
    print("=" * 40)

    load_dotenv()
    from settings import Settings

    settings = Settings.from_env()
    checks = []

    try:
        from storage import get_storage_backend

        store = get_storage_backend(settings.storage_backend, settings.data_file, settings.database_url)
        status = "OK" if store.is_available() else "FAIL (not available)"
        checks.append((f"Storage ({store.__class__.__name__})", status))
    except Exception as e:
        checks.append(("Storage", f"FAIL: {e}"))

    if settings.use_mock_chain:
        checks.append(("Chain", "SKIP (USE_MOCK_CHAIN)"))
    else:
        try:
            from chain_interface import build_chain_interface

            head = build_chain_interface(settings).health_check()
            checks.append((f"Chain (id {head['chain_id']}, block {head['block_number']})", "OK"))
        except Exception as e:
            checks.append(("Chain", f"FAIL: {e}"))

    checks.append(("Treasury signer", "OK" if settings.treasury_signer else "WARN (TREASURY_SIGNER not set)"))
    if settings.require_auth:
        checks.append(("API key", "OK" if settings.api_key else "WARN (PUNTO_API_KEY not set)"))
    else:
        checks.append(("API key", "SKIP (auth disabled)"))

    print()
    all_ok = True
    for name, status in checks:
        icon = "✓" if status == "OK" else ("○" if status.startswith(("SKIP", "WARN")) else "✗")
        print(f"  {icon} {name}: {status}")
        if status.startswith("FAIL"):
            all_ok = False

    print()
    if all_ok:
        print("All checks passed!")
        return 0
    print("Some checks failed. See above for details.")
    return 1


def cmd_info(args):
    """Display configuration."""
    import platform

    load_dotenv()
    from settings import Settings

    settings = Settings.from_env()

    print("Punto Settlement System Information")
    print("=" * 40)
    print(f"Version: {__version__}")
    print(f"Python: {platform.python_version()}")
    print()
    print("Configuration:")
    print(f"  STORAGE_BACKEND: {settings.storage_backend}")
    print(f"  DATABASE_URL: {'configured' if settings.database_url else 'not set'}")
    print(f"  CHAIN: {'mock' if settings.use_mock_chain else 'json-rpc'}")
    print(f"  TOKEN_ADDRESS: {settings.token_address} ({settings.token_decimals} decimals)")
    print(f"  CURRENCY: {settings.currency} ({settings.minor_unit_decimals} minor decimals)")
    print(f"  PUBLISH_BUFFER_PERCENT: {settings.publish_buffer_percent}")
    print(f"  CONFIRMATIONS: {settings.confirmations}")
    print(f"  LOG_LEVEL: {settings.log_level}")
    return 0


def cmd_payout(args):
    """Pay an issue's pending queue, one confirmed transfer at a time."""
    from monitoring import LoggingContext

    engine = _bootstrap()
    settings = engine.settings

    def confirm(payment):
        line = (
            f"Pay {_format_amount(payment.amount, payment.currency, settings.minor_unit_decimals)} "
            f"to {payment.recipient_id} ({payment.role.lower()}, {payment.id})?"
        )
        if args.yes:
            print(line)
            return True
        return input(f"{line} [y/N] ").strip().lower() in ("y", "yes")

    with LoggingContext(issue_id=args.issue_id, run="payout"):
        summary = engine.run_payouts(args.issue_id, confirm=confirm, max_payments=args.max)

    for result in summary.paid:
        print(f"  ✓ {result.payment.id}: {result.receipt.transaction_hash} (block {result.receipt.block_number})")
    print()
    print(
        f"Paid {len(summary.paid)} payment(s), "
        f"{_format_amount(summary.total_paid, settings.currency, settings.minor_unit_decimals)}; "
        f"stopped: {summary.stopped_reason}"
    )
    if summary.error is not None:
        print(f"Error: {summary.error}", file=sys.stderr)
        return 1
    return 0


def cmd_resolve(args):
    """Settle an unresolved payout attempt against the chain."""
    engine = _bootstrap()
    attempt = engine.resolve_attempt(args.attempt_id, abandon=args.abandon)
    print(f"Attempt {attempt.id}: {attempt.status}")
    if attempt.transaction_hash:
        print(f"  transaction: {attempt.transaction_hash}")
    if attempt.block_number is not None:
        print(f"  block: {attempt.block_number}")
    return 0 if attempt.status != "BROADCAST" else 2


def cmd_reconcile(args):
    """Report (and optionally repair) gaps between submissions, payments and transfers."""
    engine = _bootstrap()
    report = engine.reconcile(issue_id=args.issue, repair=args.repair)

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
        return 0 if report.is_clean else 1

    print("Reconciliation" + (f" of {args.issue}" if args.issue else ""))
    print("=" * 40)
    sections = [
        ("Accepted without payment", report.missing_payments),
        ("Payments created", report.created_payments),
        ("Paid, submission not updated", report.unmirrored_payments),
        ("Paid without receipt", report.paid_without_receipt),
        ("Amount mismatches", [m["payment_id"] for m in report.amount_mismatches]),
        ("Unresolved transfers", [a["attempt_id"] for a in report.unresolved_attempts]),
        ("Errors", report.errors),
    ]
    for title, items in sections:
        print(f"  {title}: {len(items)}")
        for item in items:
            print(f"    - {item}")
    print()
    print("Clean." if report.is_clean else "Findings outstanding.")
    return 0 if report.is_clean else 1


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="punto",
        description="Punto Settlement - submission review and payout engine",
    )
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", help="Host to bind to (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, help="Port to bind to (default: 5000)")
    serve_parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    serve_parser.add_argument("--production", action="store_true", help="Use gunicorn for production")
    serve_parser.add_argument("--workers", type=int, help="Number of workers (production mode)")

    subparsers.add_parser("check", help="Check installation and configuration")
    subparsers.add_parser("info", help="Display configuration")

    payout_parser = subparsers.add_parser("payout", help="Pay an issue's pending payments")
    payout_parser.add_argument("issue_id", help="Issue whose queue to pay")
    payout_parser.add_argument("--yes", "-y", action="store_true", help="Do not ask before each payment")
    payout_parser.add_argument("--max", type=int, help="Stop after N payments")

    resolve_parser = subparsers.add_parser("resolve", help="Settle an unresolved transfer")
    resolve_parser.add_argument("attempt_id", help="Payout attempt id")
    resolve_parser.add_argument(
        "--abandon", action="store_true", help="Close the attempt if no transfer is found on chain"
    )

    reconcile_parser = subparsers.add_parser("reconcile", help="Check the ledger for gaps")
    reconcile_parser.add_argument("--issue", help="Limit to one issue")
    reconcile_parser.add_argument("--repair", action="store_true", help="Create missing payments")
    reconcile_parser.add_argument("--json", action="store_true", help="Print the report as JSON")

    args = parser.parse_args(argv)

    commands = {
        "serve": cmd_serve,
        "check": cmd_check,
        "info": cmd_info,
        "payout": cmd_payout,
        "resolve": cmd_resolve,
        "reconcile": cmd_reconcile,
    }
    if args.command not in commands:
        parser.print_help()
        return 1

    from settlement_exceptions import SettlementError

    try:
        return commands[args.command](args)
    except SettlementError as e:
        print(f"Error ({e.code}): {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
