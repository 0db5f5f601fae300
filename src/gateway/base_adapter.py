# src/gateway/base_adapter.py — v1
"""Fetch/parse adapter interface implemented once per source.

Adapters own protocol mechanics (pagination, headers, egress selection).
The core only consumes their structured outputs: records, a per-call
HttpStats delta, an optional symptom bundle describing anything abnormal,
and the next pagination cursor.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from scrapegate.core.models import HttpStats, JobItem, SourceConfig, SymptomBundle

if TYPE_CHECKING:
    from scrapegate.classification.retry import RequestOptions


class ItemValidationError(ValueError):
    """A listing record parsed but failed validation; the item is skipped."""


class AdapterResult(BaseModel):
    """Outcome of one adapter call.

    ``symptoms`` is None for a normal response. Adapters leave
    ``stats.unexpected_content_types`` at zero; the core derives it from
    the symptom bundle.
    """

    records: list[dict[str, Any]] = Field(default_factory=list)
    stats: HttpStats = Field(default_factory=HttpStats)
    symptoms: SymptomBundle | None = None
    next_cursor: str | None = None
    detail_text: str | None = None


class BaseSourceAdapter(ABC):
    """Standard interface for per-source fetch/parse logic."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique adapter identifier referenced by SourceConfig.adapter."""

    @abstractmethod
    async def fetch_list_page(
        self, config: SourceConfig, cursor: str | None, options: RequestOptions
    ) -> AdapterResult:
        """Fetch one listing page. ``next_cursor`` None means the listing is complete."""

    @abstractmethod
    def parse_item(self, config: SourceConfig, record: dict[str, Any]) -> JobItem:
        """Turn one raw listing record into a JobItem.

        Raises:
            ItemValidationError: Record is well-formed but invalid.
        """

    async def fetch_detail(
        self, config: SourceConfig, item: JobItem, options: RequestOptions
    ) -> AdapterResult:
        """Fetch the detail page for one job. Only called when enabled."""
        raise NotImplementedError(f"Adapter '{self.name}' does not fetch details")

    def validate_config(self, config: SourceConfig) -> list[str]:
        """Adapter-specific configuration checks. Empty list means valid."""
        return []
