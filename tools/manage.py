#!/usr/bin/env python3
"""
Kanji Daisuki Management CLI

Commands for managing the store:
- init-db: Create tables from kanji_daisuki/db/schema.sql
- seed-kanjis: Upsert kanji from reference/kanjis.json
- capacity-report: Show holders per kanji
- revoke-claim: Return a member's slot to the pool
- check-text: Run text through the Japanese-only gate
- health-check: Run comprehensive health checks

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage init-db
    python -m tools.manage seed-kanjis
    python -m tools.manage check-text "こんにちは world"
"""

import argparse
import os
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def cmd_init_db(args):
    """Create tables in the configured PostgreSQL database."""
    from kanji_daisuki.db.config import DatabaseConfig, get_database_url
    import psycopg2

    db_url = get_database_url()
    if db_url is None:
        print("Error: no database configured (set DATABASE_URL or DATABASE_HOST)")
        return 1

    config = DatabaseConfig.from_url(db_url) if "://" in db_url else DatabaseConfig.from_env()
    schema_path = Path(__file__).parent.parent / "kanji_daisuki" / "db" / "schema.sql"
    sql = schema_path.read_text(encoding="utf-8")

    print(f"Applying schema to {config.to_url(include_password=False)}...")
    conn = psycopg2.connect(config.to_dsn())
    try:
        with conn:
            with conn.cursor() as cur:
                cur.execute(sql)
    finally:
        conn.close()
    print("[OK] Schema applied")


def cmd_seed_kanjis(args):
    """Upsert kanji from the reference data. Never touches current_users."""
    from kanji_daisuki.web.shared_store import get_store
    from reference.loader import load_reference_kanjis

    store = get_store()
    result = load_reference_kanjis(store, filename=args.file, verbose=True)
    if result.errors:
        return 1
    print(f"[OK] {len(result.loaded)} kanji in store")


def cmd_capacity_report(args):
    """Print holders per kanji."""
    from kanji_daisuki.schemas import CAPACITY_LIMIT
    from kanji_daisuki.web.shared_store import get_store

    kanjis = get_store().list_kanjis()
    if not kanjis:
        print("No kanji in store. Run seed-kanjis first.")
        return 0

    over = 0
    for k in kanjis:
        if args.full_only and not k.is_full():
            continue
        marker = "FULL" if k.is_full() else f"{k.remaining_slots()} left"
        if k.current_users > CAPACITY_LIMIT:
            marker = "OVER LIMIT"
            over += 1
        print(f"  {k.id:>4}  {k.char}  {k.current_users:>2}/{CAPACITY_LIMIT}  {marker}")

    if over:
        print(f"\n[FAIL] {over} kanji above the limit")
        return 1


def cmd_revoke_claim(args):
    """Return a member's kanji slot to the pool."""
    from kanji_daisuki.core import InvariantViolation
    from kanji_daisuki.web.shared_store import get_allocator

    try:
        kanji_id = get_allocator().revoke_claim(args.user_id)
    except InvariantViolation as e:
        print(f"Error: {e}")
        return 1
    print(f"[OK] Released kanji {kanji_id} held by {args.user_id}")


def cmd_check_text(args):
    """Run text through the gate and print the diagnostic."""
    from kanji_daisuki.core import TextGate

    text = args.text if args.text is not None else sys.stdin.read()
    result = TextGate.check(text)
    if result.acceptable:
        print("[OK] Japanese only")
        return 0
    print(f"[FAIL] {result.message}")
    return 1


def cmd_health_check(args):
    """Run comprehensive health checks."""
    from kanji_daisuki.db.config import StoreDriver, get_store_driver
    from kanji_daisuki.observability import check_health
    from kanji_daisuki.web.shared_store import get_store

    driver = get_store_driver()

    print("=== Kanji Daisuki Health Check ===\n")

    print("Store:")
    print(f"  Driver: {driver.value}")
    store = get_store()
    if driver != StoreDriver.MEMORY and type(store).__name__ == "InMemoryStore":
        print("  Status: [FAIL] Database unreachable (fell back to in-memory)")
        return 1

    status = check_health(store=store)
    for name, check in status.checks.items():
        label = "[OK]" if check.get("status") == "healthy" else "[FAIL]"
        details = {k: v for k, v in check.items() if k != "status"}
        print(f"  {name}: {label} {details if details else ''}".rstrip())

    print("\nEnvironment:")
    session_secret = os.environ.get("KANJI_DAISUKI_SESSION_SECRET", "")
    if len(session_secret) >= 16:
        print("  Session secret: [OK] Set")
    else:
        print("  Session secret: [WARN] Using default (development)")

    open_posting = os.environ.get("KANJI_DAISUKI_OPEN_POSTING", "")
    if open_posting:
        print("  Open posting: [WARN] Enabled (members may post without a kanji)")

    print("\n=== Health Check Complete ===")
    return 0 if status.healthy else 1


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Kanji Daisuki Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser(
        "init-db",
        help="Create tables in the configured database"
    )

    p_seed = subparsers.add_parser(
        "seed-kanjis",
        help="Upsert kanji from reference data"
    )
    p_seed.add_argument("--file", default="kanjis.json", help="Data file under reference/")

    p_report = subparsers.add_parser(
        "capacity-report",
        help="Show holders per kanji"
    )
    p_report.add_argument("--full-only", action="store_true", help="Only list full kanji")

    p_revoke = subparsers.add_parser(
        "revoke-claim",
        help="Return a member's kanji slot to the pool"
    )
    p_revoke.add_argument("user_id", help="Member id")

    p_check = subparsers.add_parser(
        "check-text",
        help="Check text against the Japanese-only gate"
    )
    p_check.add_argument("text", nargs="?", help="Text to check (reads stdin if omitted)")

    subparsers.add_parser(
        "health-check",
        help="Run comprehensive health checks"
    )

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "init-db": cmd_init_db,
        "seed-kanjis": cmd_seed_kanjis,
        "capacity-report": cmd_capacity_report,
        "revoke-claim": cmd_revoke_claim,
        "check-text": cmd_check_text,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
