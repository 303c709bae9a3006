"""Celery entry point.

    celery -A make_celery worker --loglevel INFO
    celery -A make_celery beat --loglevel INFO
"""
from dotenv import load_dotenv

load_dotenv()

from marketpay import create_app  # noqa: E402

flask_app = create_app()
celery_app = flask_app.extensions["celery"]
