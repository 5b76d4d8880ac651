"""Lease Automation -- command line entry point.

Usage::

    # Run the scheduler until interrupted:
    python -m lease_automation.main run

    # One-off operations:
    python -m lease_automation.main force-check
    python -m lease_automation.main process-queue
    python -m lease_automation.main verify
    python -m lease_automation.main send-test --to someone@example.com
    python -m lease_automation.main save-mail-config --provider gmail \\
        --username me@gmail.com --from me@gmail.com
    python -m lease_automation.main list-templates

    # With a custom config:
    python -m lease_automation.main --config path/to/custom.yaml force-check
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

from .config import get_config
from .context import AppContext, build_context
from .errors import ConfigurationError, LeaseAutomationError
from .models import MailConfig, MailProvider

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lease-automation",
        description="Lease Automation - scheduled tenant notifications",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python -m lease_automation.main run\n"
            "  python -m lease_automation.main force-check --verbose\n"
            "  python -m lease_automation.main send-test --to me@example.com\n"
        ),
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.yaml (default: project root config.yaml)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Start the scheduler and keep running")
    sub.add_parser("force-check", help="Run all due automations now and drain the queue")
    sub.add_parser("process-queue", help="Attempt delivery of every locally queued email")
    sub.add_parser("verify", help="Probe the mail connection without sending")
    sub.add_parser("list-templates", help="List the template catalogue")
    sub.add_parser("status", help="Show queue, sent log and scheduler state")

    test = sub.add_parser("send-test", help="Send a fixed test email")
    test.add_argument("--to", required=True, help="Recipient address")

    save = sub.add_parser(
        "save-mail-config",
        help="Store the SMTP account in the vault (password from LEASE_SMTP_PASSWORD)",
    )
    save.add_argument("--provider", default=MailProvider.OTHER.value,
                      choices=[p.value for p in MailProvider])
    save.add_argument("--host", default="")
    save.add_argument("--port", type=int, default=0)
    save.add_argument("--secure", action="store_true")
    save.add_argument("--username", required=True)
    save.add_argument("--from", dest="from_address", required=True)
    save.add_argument("--reply-to", default=None)
    save.add_argument("--disabled", action="store_true", help="Store the account disabled")
    return parser


async def _run_forever(ctx: AppContext) -> None:
    await ctx.scheduler.start()
    print(f"Scheduler running (check every {ctx.scheduler.check_interval_ms} ms). Ctrl+C to stop.")
    try:
        await asyncio.Event().wait()
    finally:
        ctx.scheduler.stop()


async def _dispatch(args: argparse.Namespace, ctx: AppContext) -> int:
    try:
        if args.command == "run":
            await _run_forever(ctx)
            return 0

        if args.command == "force-check":
            executed = await ctx.scheduler.force_check()
            print(f"{executed} automations executed")
            return 0

        if args.command == "process-queue":
            processed = await ctx.engine.process_email_queue()
            print(f"{processed} emails processed")
            return 0

        if args.command == "verify":
            result = await ctx.mail.verify_connection()
            if result.success:
                print(f"Connection OK ({result.backend})")
                return 0
            print(f"Connection FAILED: {result.error}")
            return 1

        if args.command == "send-test":
            result = await ctx.mail.send_test_email(args.to)
            if result.success:
                print(f"Test email accepted by {result.backend} ({result.message_id})")
                return 0
            print(f"Test email FAILED: {result.error}")
            return 1

        if args.command == "save-mail-config":
            config = MailConfig(
                host=args.host,
                port=args.port,
                username=args.username,
                password=os.environ.get("LEASE_SMTP_PASSWORD", ""),
                from_address=args.from_address,
                secure=args.secure,
                reply_to=args.reply_to,
                enabled=not args.disabled,
            )
            config = ctx.mail.apply_provider_preset(config, args.provider)
            ctx.mail.save_config(config)
            print(f"Mail configuration saved ({config.host}:{config.port})")
            return 0

        if args.command == "list-templates":
            for template in await ctx.templates.get_templates():
                print(f"{template.id:<40s} {template.category:<15s} {template.name}")
            return 0

        if args.command == "status":
            queue = ctx.local.get_queue()
            sent = ctx.local.get_sent_emails()
            failed = sum(1 for s in sent if not s.success)
            print(f"Queued emails : {len(queue)}")
            print(f"Sent log      : {len(sent)} ({failed} failed)")
            print(f"Last daily run: {ctx.scheduler.last_run_date or 'never'}")
            print(f"Mail ready    : {'yes' if ctx.mail.is_configured() else 'no'}")
            return 0
    finally:
        await ctx.close()

    return 2


def main(argv: list[str] | None = None) -> int:
    """CLI entry point.

    Returns:
        Exit code (0 = success, 1 = error).
    """
    args = _build_parser().parse_args(argv)
    config = get_config(args.config)

    log_level = logging.DEBUG if args.verbose else getattr(logging, config.logging.level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format=config.logging.format,
        datefmt=config.logging.datefmt,
    )

    try:
        ctx = build_context(config)
        return asyncio.run(_dispatch(args, ctx))
    except KeyboardInterrupt:
        print("\nStopped.")
        return 0
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except LeaseAutomationError as exc:
        logger.error("%s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except Exception as exc:
        logger.exception("Unexpected error")
        print(f"\nUNEXPECTED ERROR: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
