# src/gateway/adapter_registry.py — v1
"""Adapter registry: lookup of per-source adapters by name.

Adapters are registered directly or imported from dotted class paths.
"""

from __future__ import annotations

import importlib
import logging

from scrapegate.gateway.base_adapter import BaseSourceAdapter

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    """Raised when adapter loading or lookup fails."""


class AdapterRegistry:
    """Registry of available source adapters."""

    def __init__(self) -> None:
        self._adapters: dict[str, BaseSourceAdapter] = {}

    @property
    def adapter_names(self) -> list[str]:
        """Return sorted list of registered adapter names."""
        return sorted(self._adapters.keys())

    def register(self, adapter: BaseSourceAdapter) -> None:
        """Manually register an adapter instance."""
        if adapter.name in self._adapters:
            logger.warning("Overwriting existing adapter: %s", adapter.name)
        self._adapters[adapter.name] = adapter

    def load(self, class_paths: list[str]) -> None:
        """Import and register adapters from dotted class paths.

        Raises:
            RegistryError: If a path cannot be imported or instantiated.
        """
        for class_path in class_paths:
            adapter = _import_adapter(class_path)
            self.register(adapter)
            logger.debug("Loaded adapter: %s", adapter.name)
        logger.info("Registry holds %d adapter(s)", len(self._adapters))

    def get(self, name: str) -> BaseSourceAdapter | None:
        """Get adapter by name, or None if not registered."""
        return self._adapters.get(name)

    def get_or_raise(self, name: str) -> BaseSourceAdapter:
        """Get adapter by name, raise if not found."""
        adapter = self._adapters.get(name)
        if adapter is None:
            raise RegistryError(f"Adapter '{name}' not found in registry")
        return adapter


def _import_adapter(class_path: str) -> BaseSourceAdapter:
    """Import and instantiate an adapter from 'package.module.ClassName'."""
    module_path, _, class_name = class_path.rpartition(".")
    if not module_path:
        raise RegistryError(f"Invalid adapter class path: {class_path!r}")
    try:
        module = importlib.import_module(module_path)
        cls = getattr(module, class_name)
    except (ImportError, AttributeError) as exc:
        raise RegistryError(f"Cannot import adapter {class_path!r}: {exc}") from exc

    instance = cls()
    if not isinstance(instance, BaseSourceAdapter):
        raise RegistryError(f"{class_path!r} is not a BaseSourceAdapter")
    return instance
