"""Parameterized SQL building blocks shared by the record store and optimizer."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from chatvault.types import MessageStatus, Provider


def as_utc(value: datetime) -> datetime:
    """Aware UTC copy of value; naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_timestamp(value: datetime) -> str:
    """Render a datetime as fixed-width UTC ISO text so text order is time order."""
    return as_utc(value).isoformat(timespec="microseconds")


def from_db_timestamp(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class DateRange:
    start: datetime | None = None
    end: datetime | None = None

    def __post_init__(self) -> None:
        # Bounds compare against stored (aware) timestamps, in SQL and in Python alike.
        if self.start is not None:
            object.__setattr__(self, "start", as_utc(self.start))
        if self.end is not None:
            object.__setattr__(self, "end", as_utc(self.end))

    def contains(self, value: datetime) -> bool:
        value = as_utc(value)
        if self.start is not None and value < self.start:
            return False
        if self.end is not None and value > self.end:
            return False
        return True


@dataclass(frozen=True)
class ChatFilters:
    provider: Provider | None = None
    is_archived: bool | None = None
    search_term: str | None = None
    date_range: DateRange | None = None

    def where(self, alias: str = "") -> tuple[str, list[object]]:
        """Build a WHERE clause; the date range applies to updated_at.

        search_term is not part of it: the optimizer resolves it through the
        search index.
        """
        prefix = f"{alias}." if alias else ""
        clauses: list[str] = []
        params: list[object] = []
        if self.provider is not None:
            clauses.append(f"{prefix}llm_provider = ?")
            params.append(self.provider.value)
        if self.is_archived is not None:
            clauses.append(f"{prefix}is_archived = ?")
            params.append(int(self.is_archived))
        _date_clauses(self.date_range, f"{prefix}updated_at", clauses, params)
        return _join(clauses), params


@dataclass(frozen=True)
class MessageFilters:
    is_user: bool | None = None
    status: MessageStatus | None = None
    search_term: str | None = None
    date_range: DateRange | None = None

    def where(self, alias: str = "") -> tuple[str, list[object]]:
        prefix = f"{alias}." if alias else ""
        clauses: list[str] = []
        params: list[object] = []
        if self.is_user is not None:
            clauses.append(f"{prefix}is_user = ?")
            params.append(int(self.is_user))
        if self.status is not None:
            clauses.append(f"{prefix}status = ?")
            params.append(self.status.value)
        _date_clauses(self.date_range, f"{prefix}timestamp", clauses, params)
        return _join(clauses), params


def _date_clauses(date_range: DateRange | None, column: str, clauses: list[str], params: list[object]) -> None:
    if date_range is None:
        return
    if date_range.start is not None:
        clauses.append(f"{column} >= ?")
        params.append(to_db_timestamp(date_range.start))
    if date_range.end is not None:
        clauses.append(f"{column} <= ?")
        params.append(to_db_timestamp(date_range.end))


def _join(clauses: list[str]) -> str:
    return " AND ".join(clauses) if clauses else "1=1"


__all__ = [
    "ChatFilters",
    "DateRange",
    "MessageFilters",
    "as_utc",
    "from_db_timestamp",
    "to_db_timestamp",
]
