"""Management script: database setup, one-off job runs and operator commands"""

import os

from dotenv import load_dotenv
from flask.cli import FlaskGroup

load_dotenv()

from reconciler import create_app  # noqa: E402


def _create_app():
    return create_app(os.getenv("FLASK_CONFIG"))


cli = FlaskGroup(create_app=_create_app)


if __name__ == "__main__":
    cli()
