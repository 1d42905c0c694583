"""
Run one-off database migrations without starting the web server.

Usage:
  python migrate.py

This script uses Flask-Migrate (Alembic) to apply schema migrations.
"""

import os
import sys


def main():
    # Keep app startup hooks disabled; run migration explicitly below.
    os.environ['RUN_STARTUP_DDL'] = '0'
    os.environ['RUN_STARTUP_BOOTSTRAP'] = '0'

    import school_reports
    from flask_migrate import Migrate, upgrade

    Migrate(school_reports.app, directory='migrations')

    try:
        print("Applying database migrations...")
        with school_reports.app.app_context():
            upgrade(directory='migrations')
        print("✓ Migrations completed successfully.")
    except Exception as e:
        print(f"✗ Migration failed: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        sys.exit(1)

    # Roster accounts need the users table, so create them after upgrading.
    school_reports.create_roster_users()
    print("✓ Roster accounts ensured.")


if __name__ == '__main__':
    main()
