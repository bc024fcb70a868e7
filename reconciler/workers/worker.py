"""
Worker entry point:

    celery -A reconciler.workers.worker:celery worker --beat
"""
import os

from dotenv import load_dotenv

load_dotenv()

from reconciler import create_app  # noqa: E402
from reconciler.logging_config import configure_logging_for_worker  # noqa: E402

app = create_app(os.getenv("FLASK_CONFIG", "production"))
configure_logging_for_worker()
celery = app.extensions["celery"]
