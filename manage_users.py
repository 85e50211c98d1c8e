"""
Create accounts and reset passwords from the command line.

Usage:
  python manage_users.py create --username amina --full-name "Amina Uwase" --role student
  python manage_users.py reset-password --username amina

Passwords are read from USER_PASSWORD (or prompted for when unset).
"""

import argparse
import getpass
import os

import psycopg2
from dotenv import load_dotenv
from werkzeug.security import generate_password_hash

ROLES = ('admin', 'teacher', 'student')
MIN_PASSWORD_LENGTH = 8


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage E-shuri user accounts.")
    parser.add_argument("--database-url", default=os.environ.get("DATABASE_URL", ""), help="Target PostgreSQL URL")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create a user with a profile")
    create.add_argument("--username", required=True)
    create.add_argument("--full-name", required=True)
    create.add_argument("--role", choices=ROLES, default="student")

    reset = sub.add_parser("reset-password", help="Set a new password for an existing user")
    reset.add_argument("--username", required=True)
    return parser.parse_args(argv)


def read_password() -> str:
    password = os.environ.get("USER_PASSWORD") or getpass.getpass("New password: ")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise RuntimeError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    return password


def create_user(cur, username, full_name, role, password_hash):
    cur.execute(
        "INSERT INTO users (username, password_hash, role) VALUES (%s, %s, %s) RETURNING id",
        (username.strip().lower(), password_hash, role),
    )
    user_id = cur.fetchone()[0]
    cur.execute("INSERT INTO profiles (id, full_name) VALUES (%s, %s)", (user_id, full_name.strip()))
    return user_id


def reset_password(cur, username, password_hash) -> int:
    cur.execute(
        "UPDATE users SET password_hash = %s WHERE LOWER(username) = LOWER(%s)",
        (password_hash, username),
    )
    return int(cur.rowcount or 0)


def main(argv=None):
    load_dotenv()
    args = parse_args(argv)
    database_url = (args.database_url or os.environ.get("DATABASE_URL") or "").strip()
    if not database_url:
        raise RuntimeError("DATABASE_URL not found. Set it in .env")

    password_hash = generate_password_hash(read_password())

    with psycopg2.connect(database_url) as conn:
        with conn.cursor() as cur:
            if args.command == "create":
                user_id = create_user(cur, args.username, args.full_name, args.role, password_hash)
                print(f"Created {args.role} {args.username} ({user_id}).")
            else:
                if reset_password(cur, args.username, password_hash):
                    print(f"Password reset successfully for {args.username}.")
                else:
                    print(f"No user found for {args.username}.")
        conn.commit()


if __name__ == "__main__":
    main()
