# src/config/sources.py — v1
"""Declarative source configuration.

The sources file is JSON:

    {
      "adapters": ["mypkg.adapters.AcmeAdapter"],
      "sources": [{"source_key": "acme", "adapter": "acme", ...}]
    }

``adapters`` lists dotted class paths for AdapterRegistry.load(); each
entry of ``sources`` is a SourceConfig. Syncing into the store only touches
definition fields, never the kill-switch history.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, ValidationError

from scrapegate.config.settings import ConfigurationError
from scrapegate.core.errors import StaleSourceConfigError
from scrapegate.core.models import SourceConfig

if TYPE_CHECKING:
    from scrapegate.gateway.adapter_registry import AdapterRegistry
    from scrapegate.gateway.base_persistence import BasePersistenceGateway

logger = logging.getLogger(__name__)

# Fields owned by the sources file; everything else belongs to the store.
DEFINITION_FIELDS: tuple[str, ...] = (
    "adapter",
    "expected_min_jobs",
    "expected_max_jobs",
    "fetch_details",
    "expected_content_type",
    "budget",
    "adapter_options",
)


class SourcesFile(BaseModel):
    adapters: list[str] = Field(default_factory=list)
    sources: list[SourceConfig] = Field(default_factory=list)


def load_sources_file(path: Path | str) -> SourcesFile:
    """Parse and validate a sources file.

    Raises:
        ConfigurationError: File missing, malformed, or with duplicate keys.
    """
    path = Path(path).expanduser()
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigurationError(f"Sources file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Sources file {path} is not valid JSON: {e}") from e

    if isinstance(raw, list):
        raw = {"sources": raw}
    try:
        parsed = SourcesFile.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid sources file {path}: {e}") from e

    keys = [s.source_key for s in parsed.sources]
    duplicates = sorted({k for k in keys if keys.count(k) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate source keys in {path}: {duplicates}")
    logger.info("Loaded %d source(s) from %s", len(parsed.sources), path)
    return parsed


def validate_source_config(
    config: SourceConfig,
    registry: AdapterRegistry | None = None,
    blob_store_available: bool = True,
) -> list[str]:
    """Check a SourceConfig before any network call. Empty list means valid."""
    errors: list[str] = []
    if not config.source_key.strip():
        errors.append("source_key is empty")
    if not config.adapter:
        errors.append("adapter is not set")
    if not config.expected_content_type.strip():
        errors.append("expected_content_type is empty")

    lo, hi = config.expected_min_jobs, config.expected_max_jobs
    if lo is not None and lo < 0:
        errors.append("expected_min_jobs must be >= 0")
    if lo is not None and hi is not None and lo > hi:
        errors.append(f"expected_min_jobs ({lo}) > expected_max_jobs ({hi})")

    budget = config.budget
    for name in ("max_requests", "max_runtime_s", "max_bytes"):
        value = getattr(budget, name)
        if value is not None and value <= 0:
            errors.append(f"budget.{name} must be > 0")

    if config.fetch_details and not blob_store_available:
        errors.append("fetch_details requires a blob store")

    if registry is not None and config.adapter:
        adapter = registry.get(config.adapter)
        if adapter is None:
            errors.append(f"unknown adapter '{config.adapter}'")
        else:
            errors.extend(adapter.validate_config(config))
    return errors


async def sync_source_configs(
    gateway: BasePersistenceGateway, configs: list[SourceConfig]
) -> list[SourceConfig]:
    """Create missing sources and refresh definition fields of existing ones.

    Health state (enabled flags, cooldown, counters, safe mode) already in
    the store is preserved.
    """
    synced: list[SourceConfig] = []
    for config in configs:
        for _ in range(3):
            current = await gateway.get_source_config(config.source_key)
            if current is None:
                stored = await gateway.save_source_config(
                    config.model_copy(update={"version": 0}), expected_version=None
                )
                logger.info("Registered source '%s'", config.source_key)
                break
            update = {name: getattr(config, name) for name in DEFINITION_FIELDS}
            if all(getattr(current, k) == v for k, v in update.items()):
                stored = current
                break
            try:
                stored = await gateway.save_source_config(
                    current.model_copy(update=update), expected_version=current.version
                )
            except StaleSourceConfigError:
                continue
            logger.info("Updated definition of source '%s'", config.source_key)
            break
        else:
            raise ConfigurationError(
                f"Could not sync source '{config.source_key}': concurrent updates"
            )
        synced.append(stored)
    return synced
