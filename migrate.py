"""
Apply database migrations without starting the web server.

Usage:
  python migrate.py

Runs Alembic against the scripts in ./migrations, then seeds the super admin
and the default subscription plans.
"""

import logging
import os
import sys

from alembic import command
from alembic.config import Config
from dotenv import load_dotenv


def alembic_config():
    root = os.path.dirname(os.path.abspath(__file__))
    config = Config()
    config.set_main_option('script_location', os.path.join(root, 'migrations'))
    config.set_main_option('prepend_sys_path', root)
    return config


def main():
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    from accounts import ensure_super_admin
    from subscriptions import seed_default_plans

    try:
        print("Applying database migrations...")
        command.upgrade(alembic_config(), 'head')
        email = os.environ.get('SUPER_ADMIN_EMAIL', 'superadmin@schoolflow.local').strip().lower()
        password = os.environ.get('SUPER_ADMIN_PASSWORD', '').strip()
        if password:
            ensure_super_admin(email, password)
        else:
            logging.warning("SUPER_ADMIN_PASSWORD not set; skipping super admin bootstrap.")
        print(f"Seeded {seed_default_plans()} subscription plans.")
        print("Migrations completed successfully.")
    except Exception as e:
        logging.exception("Migration failed")
        print(f"Migration failed: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
