#!/usr/bin/env python3
"""
Create the Account Store tables on DATABASE_URL.

Usage:
    python -m scripts.init_db [--database-url URL]
"""
import argparse
import sys

from sqlalchemy.exc import SQLAlchemyError

from accountlink.settings import settings
from accountlink.store.database import build_engine, init_db


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Create account-linking tables")
    parser.add_argument("--database-url", default=settings.DATABASE_URL)
    args = parser.parse_args(argv)

    try:
        init_db(bind=build_engine(args.database_url))
    except SQLAlchemyError as e:
        print(f"init_db FAILED: {e}")
        return 1
    print("Tables created.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
