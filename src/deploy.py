"""
Deployment entrypoint.

Registers the HTTP endpoints and the scheduled jobs on the shared app so a
single deploy ships both:

    modal deploy -m src.deploy
"""

from . import web_api  # noqa: F401
from .app import app
from .scheduler import session_sweeper  # noqa: F401

__all__ = ["app"]
