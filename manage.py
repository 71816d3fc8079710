#!/usr/bin/env python3
# manage.py
import argparse
import logging
import sys

import config
import crud
import ledger
import overdue
from db import Base, SessionLocal, engine
from errors import CheckoutError
from models import UserIn
from notifications import DbNotificationSink

import orm  # noqa: F401

logger = logging.getLogger("manage")


def cmd_create_user(args: argparse.Namespace) -> int:
    db = SessionLocal()
    try:
        user = crud.create_user(db, UserIn(name=args.name, email=args.email, role=args.role, team=args.team))
    except CheckoutError as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return 1
    finally:
        db.close()
    print(f"created {user.role} {user.email} id={user.id}")
    return 0


def cmd_audit(args: argparse.Namespace) -> int:
    db = SessionLocal()
    try:
        rows = ledger.audit(db)
    finally:
        db.close()

    if not rows:
        print("OK: counters match open transactions")
        return 0
    for r in rows:
        print(
            f"{r['item_id']} {r['name']}: total={r['total_quantity']} available={r['available_quantity']} "
            f"reserved={r['reserved_quantity']} expected_available={r['expected_available']}"
        )
    return 2


def cmd_sweep_overdue(args: argparse.Namespace) -> int:
    db = SessionLocal()
    try:
        notified = overdue.sweep(db, DbNotificationSink(SessionLocal))
    finally:
        db.close()
    print(f"notified={notified}")
    return 0


def main() -> None:
    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    ap = argparse.ArgumentParser(description="Inventory checkout maintenance commands.")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create-user", help="Create a user (use --role admin for the first account)")
    p.add_argument("--name", required=True)
    p.add_argument("--email", required=True)
    p.add_argument("--role", choices=("admin", "manager", "user"), default="admin")
    p.add_argument("--team", default=None)
    p.set_defaults(func=cmd_create_user)

    p = sub.add_parser("audit", help="Compare item counters with open transactions")
    p.set_defaults(func=cmd_audit)

    p = sub.add_parser("sweep-overdue", help="Send overdue notifications once")
    p.set_defaults(func=cmd_sweep_overdue)

    args = ap.parse_args()
    Base.metadata.create_all(bind=engine)
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
