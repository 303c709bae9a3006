"""Create the payment tables on the configured database.

Usage: python scripts/init_db.py
For schema changes after the first deploy use ``flask --app wsgi db migrate``.
"""
import logging
import os
import sys

from dotenv import load_dotenv
from sqlalchemy.exc import SQLAlchemyError

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from marketpay import create_app  # noqa: E402
from marketpay.extensions import db  # noqa: E402

logger = logging.getLogger("init_db")


def mask(url):
    parts = url.split("@")
    return f"{parts[0].split('://')[0]}://*****@{parts[1]}" if len(parts) > 1 else url


def main():
    load_dotenv()
    app = create_app(os.getenv("FLASK_CONFIG", "development"))
    with app.app_context():
        logger.info("DATABASE_URL: %s", mask(app.config["SQLALCHEMY_DATABASE_URI"]))
        try:
            db.create_all()
        except SQLAlchemyError:
            logger.exception("Creating tables failed")
            raise
        logger.info("Tables created: %s", ", ".join(sorted(db.metadata.tables)))


if __name__ == "__main__":
    main()
