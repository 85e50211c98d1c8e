"""
Apply database migrations without starting the web server.

Usage:
  python migrate.py                 # upgrade to head
  python migrate.py --revision 001_initial
  python migrate.py --sql > schema.sql

Uses Flask-Migrate (Alembic) against DATABASE_URL.
"""

import argparse
import sys


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Apply E-shuri schema migrations.")
    parser.add_argument("--revision", default="head", help="Target revision (default: head)")
    parser.add_argument("--sql", action="store_true", help="Print the SQL instead of running it")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    import eshuri
    from flask_migrate import upgrade

    try:
        print("Applying database migrations...", file=sys.stderr)
        with eshuri.app.app_context():
            upgrade(directory='migrations', revision=args.revision, sql=args.sql)
        print("✓ Migrations completed successfully.", file=sys.stderr)
    except Exception as e:
        print(f"✗ Migration failed: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
