# webwatch/__init__.py
from __future__ import annotations

# Re-export commonly-used types for convenience
from .schedule import InvalidScheduleError
from .scheduler import CronEngine, MissingIdError
from .scraping.models import Job, Outcome

__version__ = "0.1.0"

__all__ = [
    "CronEngine",
    "InvalidScheduleError",
    "Job",
    "MissingIdError",
    "Outcome",
]
