#!/usr/bin/env python3
"""
Operator commands for Community Era.

Usage:
    python manage.py sweep
    python manage.py create-admin EMAIL USERNAME PASSWORD
    python manage.py ensure-indexes
"""

import argparse
import logging
import sys

from clustering import run_maintenance_sweep
from database import create_document, ensure_indexes, get_db
from main import pwd_context
from schemas import Role

logger = logging.getLogger("community_era.manage")


def cmd_sweep(database, args):
    result = run_maintenance_sweep(database["report"])
    print(f"Merged {result.merged_count} reports ({result.roots_scanned} roots scanned, {result.failed_count} failed)")
    return 0 if result.failed_count == 0 else 1


def cmd_create_admin(database, args):
    users = database["user"]
    user = users.find_one({"$or": [{"email": args.email}, {"username": args.username}]})
    password_hash = pwd_context.hash(args.password)

    if user:
        users.update_one(
            {"_id": user["_id"]},
            {"$set": {"role": Role.admin.value, "password_hash": password_hash}},
        )
        print(f"Updated user \"{user.get('username')}\" to admin role")
    else:
        create_document(database, "user", {
            "username": args.username,
            "email": args.email,
            "role": Role.admin.value,
            "password_hash": password_hash,
            "is_active": True,
        })
        print(f"Created admin user: {args.username} ({args.email})")
    return 0


def cmd_ensure_indexes(database, args):
    ensure_indexes(database)
    print("Indexes ensured")
    return 0


def build_parser():
    parser = argparse.ArgumentParser(prog="manage.py", description="Community Era operator commands")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("sweep", help="Merge nearby unclustered reports")
    p.set_defaults(func=cmd_sweep)

    p = sub.add_parser("create-admin", help="Create an admin user or promote an existing one")
    p.add_argument("email")
    p.add_argument("username")
    p.add_argument("password")
    p.set_defaults(func=cmd_create_admin)

    p = sub.add_parser("ensure-indexes", help="Create collection indexes")
    p.set_defaults(func=cmd_ensure_indexes)

    return parser


def main(argv=None, database=None):
    args = build_parser().parse_args(argv)
    database = database if database is not None else get_db()
    if database is None:
        logger.error("DATABASE_URL is not set")
        return 2
    return args.func(database, args)


if __name__ == "__main__":
    sys.exit(main())
