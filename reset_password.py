"""
Reset a teacher account password from the command line.

Usage:
  python reset_password.py TR3
  python reset_password.py TR3 --password "new secret"
  python reset_password.py --all

Without --password the account goes back to DEFAULT_USER_PASSWORD, the same
password the roster accounts are created with.
"""

import argparse
import os
import sys

import psycopg2
from dotenv import load_dotenv
from werkzeug.security import generate_password_hash


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Reset one or all teacher account passwords.")
    parser.add_argument("username", nargs="?", default=os.getenv("RESET_USERNAME", ""), help="Account to reset")
    parser.add_argument("--password", default=os.getenv("RESET_PASSWORD", ""), help="New password (default: DEFAULT_USER_PASSWORD)")
    parser.add_argument("--all", action="store_true", help="Reset every account")
    return parser.parse_args(argv)


def main(argv=None):
    load_dotenv()
    args = parse_args(argv)
    database_url = (os.getenv("DATABASE_URL") or "").strip()
    raw_password = args.password or os.getenv("DEFAULT_USER_PASSWORD") or ""
    username = (args.username or "").strip()

    if not database_url:
        raise RuntimeError("DATABASE_URL not found. Set it in .env")
    if not username and not args.all:
        raise RuntimeError("Pass a username (or RESET_USERNAME) or --all.")
    if not raw_password:
        raise RuntimeError("Pass --password or set DEFAULT_USER_PASSWORD.")

    password_hash = generate_password_hash(raw_password)

    with psycopg2.connect(database_url) as conn:
        with conn.cursor() as c:
            if args.all:
                c.execute("UPDATE users SET password_hash = %s", (password_hash,))
            else:
                c.execute(
                    "UPDATE users SET password_hash = %s WHERE LOWER(username) = LOWER(%s)",
                    (password_hash, username),
                )
            updated = int(c.rowcount or 0)
        conn.commit()

    if not updated:
        print(f"No user found for {username or 'any account'}.")
        return 1
    print(f"Password reset for {updated} account(s).")
    return 0


if __name__ == "__main__":
    sys.exit(main())
