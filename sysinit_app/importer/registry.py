"""
Import module registry.

Modules are registered explicitly: each module package exposes a
``register(registry)`` bootstrap function, and ``discover_modules`` imports the
configured dotted paths and calls them. Discovery completes once; the graph is
validated fail-fast and the registry is read-only afterwards.
"""

from __future__ import annotations

import importlib
import threading
from collections import OrderedDict
from typing import Iterable, Sequence, Tuple

from .contracts import ImportModule, ModuleDescriptor
from .errors import (
    DuplicateModuleError,
    ImporterConfigurationError,
    RegistryFrozenError,
    RegistryNotReadyError,
    UnknownModuleError,
    UnresolvedDependencyError,
)
from .pipeline.ordering import find_unresolved, resolve_order


class ModuleRegistry:
    """Process-wide collection of import modules, frozen after discovery."""

    def __init__(self) -> None:
        self._modules: "OrderedDict[str, ImportModule]" = OrderedDict()
        self._ordered: Tuple[ModuleDescriptor, ...] | None = None
        self._lock = threading.Lock()

    def register(self, module: ImportModule) -> ImportModule:
        module_id = module.descriptor.id
        with self._lock:
            if self._ordered is not None:
                raise RegistryFrozenError(module_id)
            if module_id in self._modules:
                raise DuplicateModuleError(module_id)
            self._modules[module_id] = module
        return module

    def complete_discovery(self) -> Tuple[ModuleDescriptor, ...]:
        """
        Validate the module graph and freeze the registry.

        Raises ``UnresolvedDependencyError`` or ``CyclicDependencyError``; on
        failure the registry stays unready so a broken graph is never exposed.
        """
        with self._lock:
            if self._ordered is not None:
                return self._ordered
            descriptors = {module_id: module.descriptor for module_id, module in self._modules.items()}
            unresolved = find_unresolved(descriptors)
            if unresolved:
                raise UnresolvedDependencyError(unresolved)
            self._ordered = resolve_order(descriptors.values())
            return self._ordered

    @property
    def ready(self) -> bool:
        return self._ordered is not None

    def _require_ready(self) -> Tuple[ModuleDescriptor, ...]:
        if self._ordered is None:
            raise RegistryNotReadyError()
        return self._ordered

    def ordered_descriptors(self) -> Tuple[ModuleDescriptor, ...]:
        return self._require_ready()

    def all(self) -> Tuple[ImportModule, ...]:
        """Return every module in import order."""
        ordered = self._require_ready()
        return tuple(self._modules[descriptor.id] for descriptor in ordered)

    def get(self, module_id: str) -> ImportModule:
        self._require_ready()
        module = self._modules.get(module_id)
        if module is None:
            raise UnknownModuleError(module_id)
        return module

    def position(self, module_id: str) -> int:
        for index, descriptor in enumerate(self._require_ready()):
            if descriptor.id == module_id:
                return index
        raise UnknownModuleError(module_id)

    def __contains__(self, module_id: object) -> bool:
        return module_id in self._modules

    def __len__(self) -> int:
        return len(self._modules)


def discover_modules(registry: ModuleRegistry, module_paths: Iterable[str]) -> ModuleRegistry:
    """Import each dotted path and call its ``register(registry)`` bootstrap."""

    for path in module_paths:
        try:
            package = importlib.import_module(path)
        except ImportError as exc:
            raise ImporterConfigurationError(
                f"Import module package '{path}' could not be imported: {exc}",
                details={"path": path},
            ) from exc
        bootstrap = getattr(package, "register", None)
        if not callable(bootstrap):
            raise ImporterConfigurationError(
                f"Import module package '{path}' does not expose a register(registry) function.",
                details={"path": path},
            )
        bootstrap(registry)
    return registry


def build_registry(module_paths: Sequence[str]) -> ModuleRegistry:
    """Create a registry, run discovery for ``module_paths`` and freeze it."""

    registry = ModuleRegistry()
    discover_modules(registry, module_paths)
    registry.complete_discovery()
    return registry
