# webwatch/scraping/__init__.py
from __future__ import annotations

# Re-export commonly-used types for convenience
from .db import JobStore, NotFoundError
from .extract import RegexCompileError, SelectorCompileError
from .http_client import FetchError, HttpClient, HttpStatusError
from .models import AttributeData, DataKind, Job, JobStats, Outcome, SelectorKind, TextData

__all__ = [
    "AttributeData",
    "DataKind",
    "FetchError",
    "HttpClient",
    "HttpStatusError",
    "Job",
    "JobStats",
    "JobStore",
    "NotFoundError",
    "Outcome",
    "RegexCompileError",
    "SelectorCompileError",
    "SelectorKind",
    "TextData",
]
