"""Read-only dashboard API for the work harness.

Serves the issue store, progress log and checkpoint history over REST.
"""

from .main import create_app, run_dashboard

__all__ = ["create_app", "run_dashboard"]
