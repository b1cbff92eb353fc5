"""
Process-wide cache of ClassSchema and SubclassRegistry objects.

Schemas are built lazily on first use and never change afterwards. A miss is
computed without holding any lock; concurrent first calls may build the same
schema twice, and whichever result is published first wins. Extraction is
pure, so both results are structurally identical.
"""

import logging
from typing import Any, Callable, Dict, List

from treestate.extractor import MetadataExtractor
from treestate.schema import ClassSchema, SubclassRegistry

logger = logging.getLogger(__name__)


class SchemaRegistry:
    """Singleton registry of ClassSchema objects, keyed by class identity.

    Thread safety: publication uses dict.setdefault, which is atomic; readers
    never observe a partially built schema.
    """
    _schemas: Dict[type, ClassSchema] = {}
    _registries: Dict[Any, SubclassRegistry] = {}

    # Callbacks receive (cls, schema) once per published schema
    _on_register_callbacks: List[Callable[[type, ClassSchema], None]] = []

    @classmethod
    def add_register_callback(cls, callback: Callable[[type, ClassSchema], None]) -> None:
        """Subscribe to schema publication events."""
        if callback not in cls._on_register_callbacks:
            cls._on_register_callbacks.append(callback)

    @classmethod
    def remove_register_callback(cls, callback: Callable[[type, ClassSchema], None]) -> None:
        """Unsubscribe from schema publication events."""
        if callback in cls._on_register_callbacks:
            cls._on_register_callbacks.remove(callback)

    @classmethod
    def _fire_register_callbacks(cls, klass: type, schema: ClassSchema) -> None:
        for callback in cls._on_register_callbacks:
            try:
                callback(klass, schema)
            except Exception as e:
                logger.warning(f"Error in schema register callback: {e}")

    @classmethod
    def _extractor(cls) -> MetadataExtractor:
        return MetadataExtractor(registry_lookup=cls.registry_for)

    @classmethod
    def get(cls, klass: type) -> ClassSchema:
        """Get the schema of klass, building it on first use.

        Raises:
            SchemaError: if klass cannot be described (not cached; every call
                raises again)
        """
        schema = cls._schemas.get(klass)
        if schema is not None:
            return schema

        built = cls._extractor().extract(klass)
        schema = cls._schemas.setdefault(klass, built)
        if schema is built:
            logger.debug(f"Registered schema: {klass.__qualname__} (tag={schema.tag})")
            cls._fire_register_callbacks(klass, schema)
        return schema

    @classmethod
    def registry_for(cls, base: Any) -> SubclassRegistry:
        """Get the subclass registry for a declared field type (class or Union)."""
        registry = cls._registries.get(base)
        if registry is not None:
            return registry
        built = cls._extractor().build_registry(base)
        return cls._registries.setdefault(base, built)

    @classmethod
    def is_registered(cls, klass: type) -> bool:
        return klass in cls._schemas

    @classmethod
    def get_all(cls) -> Dict[type, ClassSchema]:
        """Snapshot of every published schema."""
        return dict(cls._schemas)

    @classmethod
    def clear(cls) -> None:
        """Forget every schema and registry. Used by tests."""
        cls._schemas.clear()
        cls._registries.clear()
        logger.debug("Cleared schema registry")
