#!/usr/bin/env python3
"""
Emission Engine
===============

Usage:
    python main.py run
    python main.py settings show
    python main.py settings set --min 4 --max 16 --start 07:49 --end 22:30
    python main.py generate
    python main.py generate --recipient 12345 --total 100 --force
    python main.py status
"""

import argparse
import asyncio
import logging
import sys

import config
from utils.logging_utils import setup_logging

logger = logging.getLogger("emission.main")


def run_engine():
    """Pre-flight checks, then the async engine until SIGTERM/SIGINT"""
    print("=" * 60)
    print("  Emission Engine — AsyncIO Scheduler")
    print("=" * 60)
    print()

    if not config.BOT_TOKEN:
        print("❌ BOT_TOKEN not set.")
        sys.exit(1)

    if not config.DATABASE_URL:
        print("❌ DATABASE_URL not set.")
        sys.exit(1)

    try:
        from database import db
        db.command("ping")
        print("✅ MongoDB connected")
    except Exception as e:
        print(f"❌ MongoDB unreachable: {e}")
        sys.exit(1)

    from emission.settings import ConfigurationError, load_broadcast_settings
    try:
        settings = load_broadcast_settings()
        print(
            f"✅ Broadcasts: {settings.min_per_day}-{settings.max_per_day}/day, "
            f"{settings.start_time}-{settings.end_time} (UTC{settings.utc_offset_hours:+d})"
        )
    except ConfigurationError as e:
        # The engine still starts; broadcasts stay unarmed until settings are fixed
        print(f"⚠️  Broadcast settings invalid: {e}")

    print(f"✅ Profit day timezone: {config.TARGET_TIMEZONE}")
    print()

    setup_logging(config.LOG_LEVEL, config.LOG_FILE, structured=config.LOG_JSON)

    from emission.scheduler import main as scheduler_main
    asyncio.run(scheduler_main())


def show_settings():
    from database import BroadcastSettingsStore

    settings = BroadcastSettingsStore.get()
    print("\n📣 Broadcast settings\n")
    print(f"   Posts per day: {settings['min_per_day']}-{settings['max_per_day']}")
    print(f"   Window:        {settings['start_time']}-{settings['end_time']} (UTC{settings['utc_offset_hours']:+d})")
    print()


def set_settings(min_per_day: int = None, max_per_day: int = None, start_time: str = None, end_time: str = None):
    """Validate the merged settings before anything is written"""
    from database import BroadcastSettingsStore
    from emission.settings import BroadcastSettings, ConfigurationError

    merged = BroadcastSettingsStore.get()
    changes = {
        "min_per_day": min_per_day,
        "max_per_day": max_per_day,
        "start_time": start_time,
        "end_time": end_time,
    }
    merged.update({k: v for k, v in changes.items() if v is not None})

    try:
        BroadcastSettings.from_dict(merged)
    except ConfigurationError as e:
        print(f"❌ Rejected: {e}")
        sys.exit(1)

    BroadcastSettingsStore.update(**changes)
    print("✅ Broadcast settings saved")
    show_settings()
    print("   Send SIGHUP to the running engine to re-plan today's broadcasts.")


def generate(recipient_id: str = None, total: float = None, force: bool = False):
    from emission.profit_generator import ProfitEventGenerator, daily_total_for_balance
    from database import Recipient

    generator = ProfitEventGenerator()

    if not recipient_id:
        stats = generator.generate_for_all(force=force)
        print(f"\n✅ Profit batches for {generator.day_key()}: {stats}\n")
        return

    if total is None:
        user = Recipient.get_by_telegram_id(recipient_id)
        if not user:
            print(f"❌ Recipient {recipient_id} not found")
            sys.exit(1)
        total = daily_total_for_balance(float(user.get("balance") or 0))

    if not force:
        from database import ProfitEvent
        if ProfitEvent.has_batch(recipient_id, generator.day_key()):
            print(f"⚠️  {recipient_id} already has a batch today; use --force to regenerate the remainder")
            return

    events = generator.generate_for_recipient(recipient_id, total)
    print(f"\n✅ {len(events)} events for {recipient_id} (daily total ${total:.2f})\n")
    for event in events:
        print(f"   {event['due_at']:%Y-%m-%d %H:%M:%S} UTC  +${event['amount']:.2f}")
    print()


def show_status():
    from database import BroadcastLog, ProfitEvent
    from emission.profit_generator import ProfitEventGenerator

    day = ProfitEventGenerator().day_key()
    stats = ProfitEvent.get_day_stats(day)

    print(f"\n💰 Profit events for {day}")
    print(f"   Total: {stats['total']}  Delivered: {stats['delivered']}  "
          f"Unreachable: {stats['unreachable']}  Pending: {stats['pending']}")

    print("\n📣 Recent broadcasts")
    recent = BroadcastLog.get_recent(limit=10)
    if not recent:
        print("   None yet")
    for run in recent:
        started = run.get("started_at")
        when = f"{started:%Y-%m-%d %H:%M}" if started else "?"
        if run.get("aborted"):
            print(f"   {when}  aborted: {run.get('error')}")
        else:
            print(f"   {when}  order #{run.get('order_number')}  "
                  f"{run.get('delivered', 0)}/{run.get('recipients', 0)} delivered")
    print()


def main():
    parser = argparse.ArgumentParser(
        description="Scheduled profit notifications and trading card broadcasts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py run
  python main.py settings set --min 4 --max 16 --start 07:49 --end 22:30
  python main.py generate --recipient 12345 --force
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("run", help="Run the engine (blocks until SIGTERM/SIGINT)")

    settings_parser = subparsers.add_parser("settings", help="Show or change broadcast settings")
    settings_sub = settings_parser.add_subparsers(dest="settings_command")
    settings_sub.add_parser("show", help="Show current broadcast settings")
    set_parser = settings_sub.add_parser("set", help="Change broadcast settings")
    set_parser.add_argument("--min", type=int, dest="min_per_day", help="Minimum posts per day")
    set_parser.add_argument("--max", type=int, dest="max_per_day", help="Maximum posts per day")
    set_parser.add_argument("--start", dest="start_time", help="Window start (HH:MM, local)")
    set_parser.add_argument("--end", dest="end_time", help="Window end (HH:MM, local)")

    generate_parser = subparsers.add_parser("generate", help="Generate today's profit events")
    generate_parser.add_argument("--recipient", help="Telegram id of a single recipient")
    generate_parser.add_argument("--total", type=float, help="Daily total (default: from balance and tariff)")
    generate_parser.add_argument("--force", action="store_true", help="Regenerate the undelivered remainder")

    subparsers.add_parser("status", help="Today's delivery stats and recent broadcasts")

    args = parser.parse_args()

    if args.command == "run":
        run_engine()
        return

    setup_logging(config.LOG_LEVEL, structured=config.LOG_JSON)

    if args.command == "settings":
        if args.settings_command == "set":
            set_settings(args.min_per_day, args.max_per_day, args.start_time, args.end_time)
        else:
            show_settings()
    elif args.command == "generate":
        generate(args.recipient, args.total, args.force)
    elif args.command == "status":
        show_status()
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
