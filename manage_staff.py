#!/usr/bin/env python3
"""
Maintain the ledger's identity directory (the ``staff`` table).

Changes take effect on the next API request; the server does not need
to be restarted.

Usage:
    python manage_staff.py add anh@example.com --name "Anh"
    python manage_staff.py disable anh@example.com
    python manage_staff.py enable anh@example.com
    python manage_staff.py list

The database is the one configured by ``DATABASE_URL``; pass ``--db``
to point at another file.
"""

import argparse
import asyncio
import os
import sys

from salon_ledger_api.app.core.config import settings
from salon_ledger_api.app.core.db import init_db
from salon_ledger_api.app.services.staff_service import StaffService


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Manage who may use the salon ledger.")
    ap.add_argument("--db", help="Path to SQLite DB file (defaults to DATABASE_URL)")
    sub = ap.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add", help="Allow an e-mail address")
    add.add_argument("email")
    add.add_argument("--name", default="", help="Display name stored on new orders")
    add.add_argument("--disabled", action="store_true", help="Add the row disabled")

    for command, text in (("enable", "Re-enable"), ("disable", "Lock out")):
        p = sub.add_parser(command, help=f"{text} every row for an e-mail address")
        p.add_argument("email")

    lst = sub.add_parser("list", help="Show directory rows")
    lst.add_argument("email", nargs="?")
    return ap


async def run(args: argparse.Namespace) -> int:
    if args.command == "add":
        entry = await StaffService.add(args.email, name=args.name, enabled=not args.disabled)
        print(f"[+] Added {entry.email} ({entry.name or 'no name'}), enabled={entry.enabled}")
        return 0
    if args.command in ("enable", "disable"):
        changed = await StaffService.set_enabled(args.email, args.command == "enable")
        if not changed:
            print(f"[!] No directory row for: {args.email}", file=sys.stderr)
            return 2
        print(f"[+] {args.command.capitalize()}d {changed} row(s) for {args.email}")
        return 0
    entries = await StaffService.list_entries(args.email)
    for entry in entries:
        flag = "on " if entry.enabled else "off"
        print(f"{entry.id:>4}  {flag}  {entry.email:<40} {entry.name}")
    if not entries:
        print("(no entries)")
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    if args.db:
        settings.database_url = os.path.abspath(args.db)
    init_db()
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
