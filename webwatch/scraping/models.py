from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Union

from .utils import from_iso, opt_str, to_iso, truthy


class SelectorKind(str, enum.Enum):
    """Which grammar `Job.selector` is written in."""

    CSS = "css"
    REGEX = "regex"

    @classmethod
    def parse(cls, raw: Any) -> SelectorKind:
        if isinstance(raw, SelectorKind):
            return raw
        key = str(raw or "").strip().lower()
        for kind in cls:
            if kind.value == key:
                return kind
        raise ValueError(f"Invalid selector kind: {raw!r} (expected 'css' or 'regex')")


# ---- Data kind (tagged variant) ---------------------------------------------


@dataclass(frozen=True)
class TextData:
    """Take the element's text content."""

    def __str__(self) -> str:
        return "text"


@dataclass(frozen=True)
class AttributeData:
    """Take the value of one attribute of the element."""

    name: str

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("attribute data kind requires a non-empty attribute name")

    def __str__(self) -> str:
        return f"attribute:{self.name}"


DataKind = Union[TextData, AttributeData]

TEXT = TextData()


def parse_data_kind(raw: Any) -> DataKind:
    """
    Accepted shapes:
      "text"                    -> TextData
      "attribute:href"          -> AttributeData("href")
      {"attribute": "href"}     -> AttributeData("href")
      TextData / AttributeData  -> unchanged
    """
    if isinstance(raw, (TextData, AttributeData)):
        return raw
    if raw is None:
        return TEXT
    if isinstance(raw, Mapping):
        if set(raw.keys()) != {"attribute"}:
            raise ValueError(f"Invalid data kind object: {dict(raw)!r}")
        return AttributeData(str(raw["attribute"]).strip())
    s = str(raw).strip()
    if s.lower() == "text":
        return TEXT
    if s.lower().startswith("attribute:"):
        return AttributeData(s.split(":", 1)[1].strip())
    raise ValueError(f"Invalid data kind: {raw!r} (expected 'text' or 'attribute:<name>')")


# ---- Job --------------------------------------------------------------------


@dataclass(frozen=True)
class Job:
    """
    A persisted description of what to fetch, how to extract from it and when.

    `id` is None until the store assigns one; after that it never changes
    (use `with_id` on an unsaved job, `replace(...)` for everything else).
    """

    name: str
    url: str
    selector: str
    schedule: str
    selector_kind: SelectorKind = SelectorKind.CSS
    data_kind: DataKind = TEXT
    user_agent: str | None = None
    proxy_url: str | None = None
    active: bool = True
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def with_id(self, job_id: int) -> Job:
        if self.id is not None and self.id != job_id:
            raise ValueError(f"Job {self.name!r} already has id {self.id}; ids are immutable")
        return replace(self, id=int(job_id))

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> Job:
        """
        Build a Job from the wire/config shape. Both camelCase and snake_case
        keys are accepted (selectorKind / selector_kind, isActive / active, ...).
        """

        def pick(*names: str, default: Any = None) -> Any:
            for n in names:
                if n in raw and raw[n] is not None:
                    return raw[n]
            return default

        name = opt_str(pick("name"))
        url = opt_str(pick("url"))
        selector = pick("selector")
        schedule = opt_str(pick("schedule"))
        missing = [k for k, v in (("name", name), ("url", url), ("selector", selector), ("schedule", schedule)) if not v]
        if missing:
            raise ValueError(f"Job is missing required field(s): {', '.join(missing)}")

        raw_id = pick("id")
        return cls(
            id=int(raw_id) if raw_id is not None else None,
            name=name,  # type: ignore[arg-type]
            url=url,  # type: ignore[arg-type]
            selector=str(selector),
            schedule=schedule,  # type: ignore[arg-type]
            selector_kind=SelectorKind.parse(pick("selectorKind", "selector_kind", "selector_type", default="css")),
            data_kind=parse_data_kind(pick("dataKind", "data_kind", "data_type", default="text")),
            user_agent=opt_str(pick("userAgent", "user_agent")),
            proxy_url=opt_str(pick("proxyUrl", "proxy_url")),
            active=truthy(pick("active", "isActive", "is_active", default=True)),
            created_at=from_iso(pick("createdAt", "created_at")),
            updated_at=from_iso(pick("updatedAt", "updated_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        data_kind: Any = "text" if isinstance(self.data_kind, TextData) else {"attribute": self.data_kind.name}
        out: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "selectorKind": self.selector_kind.value,
            "selector": self.selector,
            "dataKind": data_kind,
            "schedule": self.schedule,
            "userAgent": self.user_agent,
            "proxyUrl": self.proxy_url,
            "active": self.active,
            "createdAt": to_iso(self.created_at) if self.created_at else None,
            "updatedAt": to_iso(self.updated_at) if self.updated_at else None,
        }
        return out


# ---- Outcome ----------------------------------------------------------------


@dataclass(frozen=True)
class Outcome:
    """
    Result of one execution of a job. Immutable once produced.
    - data: extracted items joined by newline (what gets stored)
    - items: the same items as a tuple; in-memory only, not persisted
    - error_message: set iff success is False
    """

    job_id: int
    data: str
    timestamp: datetime
    success: bool
    error_message: str | None = None
    id: int | None = None
    items: tuple[str, ...] = field(default=(), compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.success and self.error_message is not None:
            raise ValueError("successful outcome cannot carry an error message")
        if not self.success and not self.error_message:
            raise ValueError("failed outcome requires an error message")

    @classmethod
    def succeeded(cls, job_id: int, items: list[str] | tuple[str, ...], timestamp: datetime) -> Outcome:
        items = tuple(items)
        return cls(job_id=job_id, data="\n".join(items), timestamp=timestamp, success=True, items=items)

    @classmethod
    def failed(cls, job_id: int, error_message: str, timestamp: datetime) -> Outcome:
        return cls(job_id=job_id, data="", timestamp=timestamp, success=False, error_message=error_message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "jobId": self.job_id,
            "data": self.data,
            "timestamp": to_iso(self.timestamp),
            "success": self.success,
            "errorMessage": self.error_message,
        }


@dataclass(frozen=True)
class JobStats:
    total_jobs: int
    active_jobs: int
    total_outcomes: int
    last_run: datetime | None = None
