#!/usr/bin/env python3
"""
Checkout Lock Diagnostics Script

Prints system-wide checkout lock counts, or the audit chain of one lock,
and can create the tables or run a single expiry sweep.

Usage:
    python checkout_diagnostics.py
    python checkout_diagnostics.py --lock-id <lock_id>
    python checkout_diagnostics.py --init-db
    python checkout_diagnostics.py --sweep
    python checkout_diagnostics.py --json
"""
import json
import sys

from dotenv import load_dotenv

load_dotenv()

from checkout_handler.config import CheckoutSettings
from checkout_handler.exceptions import BaseAppException
from checkout_handler.handler import build_services
from checkout_handler.services.diagnostics_service import get_lock_diagnostics, get_system_diagnostics
from checkout_handler.utils.logging import configure_logging
from db.db import SessionLocal, create_tables, init_engine


def _arg_value(flag: str):
    if flag in sys.argv:
        idx = sys.argv.index(flag) + 1
        if idx < len(sys.argv):
            return sys.argv[idx]
    return None


def print_system_report(report):
    locks = report["locks"]
    print("\n" + "=" * 80)
    print("CHECKOUT LOCK DIAGNOSTICS")
    print("=" * 80)
    print(f"Generated at:          {report['generated_at']}")
    print(f"Active locks:          {locks['active']}")
    print(f"Lapsed (not swept):    {locks['lapsed_unswept']}")
    print(f"Completed today:       {locks['completed_today']}")
    print(f"Failed today:          {locks['failed_today']}")
    print(f"Expired today:         {locks['expired_today']}")
    print(f"Pending outcomes:      {report['idempotency']['pending_outcomes']}")

    if report["recommendations"]:
        print("\n" + "-" * 80)
        print("RECOMMENDATIONS")
        print("-" * 80)
        for item in report["recommendations"]:
            print(f"  - {item}")
    print()


def print_lock_report(report):
    lock = report["lock"]
    print("\n" + "=" * 80)
    print(f"LOCK {lock['id']}")
    print("=" * 80)
    print(f"Cart:        {lock['cart_id']}")
    print(f"Session:     {lock['session_id']}")
    print(f"State:       {lock['state_name']} ({lock['state']})")
    print(f"Phase:       {lock['phase']}")
    print(f"Expires at:  {lock['expires_at']}")
    print(f"Can resume:  {lock['can_resume']}")
    if lock["failure_reason"]:
        print(f"Failure:     {lock['failure_reason']}")

    print("\n" + "-" * 80)
    print("RESUME CHAIN (oldest first)")
    print("-" * 80)
    for link in report["chain"]:
        keys = ", ".join(link["idempotency_keys"]) or "-"
        print(f"  {link['id']}  {link['state']:<10} locked {link['locked_at']}  keys: {keys}")
    print()


def main():
    configure_logging()
    settings = CheckoutSettings.from_env()
    engine = init_engine(settings.database_url)
    if '--init-db' in sys.argv:
        create_tables(engine)
        print("Checkout tables ready")
    services = build_services(settings=settings, session_factory=SessionLocal)

    db = SessionLocal()
    try:
        if '--sweep' in sys.argv:
            expired = services.sweeper.sweep_once(db)
            print(f"Expired {expired} lapsed lock(s)")

        lock_id = _arg_value('--lock-id')
        if lock_id:
            report = get_lock_diagnostics(db, services.status, lock_id)
            printer = print_lock_report
        else:
            report = get_system_diagnostics(db, services.lock_manager, sweeper=services.sweeper)
            printer = print_system_report

        if '--json' in sys.argv:
            print(json.dumps(report, indent=2, default=str))
        else:
            printer(report)
    except BaseAppException as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)
    finally:
        db.close()


if __name__ == '__main__':
    main()
