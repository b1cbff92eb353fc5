"""
Immutable per-class descriptors.

A ClassSchema is built once per class by the MetadataExtractor and never
mutated afterwards. Everything the codec and the resolver need is precomputed
here so that no introspection happens per instance.

Design Philosophy: Correct by Construction
- Frozen dataclasses for every descriptor
- Lookup tables built once, exposed as read-only mappings
- No references to instances, only to classes and functions
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, FrozenSet, Mapping, Optional, Tuple

from treestate.providers import ProviderRole

# Sentinel for "no default declared" (None is a legitimate default)
NO_DEFAULT = object()

# Marker tag prefixes, combined with FieldDescriptor.marker_name
NULL_PREFIX = 'null-'
LIST_PREFIX = 'list-'
EMPTY_PREFIX = 'empty-'


class SerializationMode(Enum):
    ATTRIBUTE = "attribute"
    BLOCK = "block"


class Arity(Enum):
    SINGLE = "single"
    OPTIONAL = "optional"
    REPEATED = "repeated"
    REPEATED_OF_REPEATED = "repeated_of_repeated"

    @property
    def is_collection(self) -> bool:
        return self in (Arity.REPEATED, Arity.REPEATED_OF_REPEATED)


class TagRole(Enum):
    """What a child tag means for the field that owns it."""
    ELEMENT = "element"
    NULL = "null"
    LIST = "list"
    EMPTY = "empty"
    WRAPPER = "wrapper"


@dataclass(frozen=True)
class SubclassRegistry:
    """
    Discriminant tag <-> concrete class mapping for a declared type.

    by_tag holds current and obsolete tags of constructible classes;
    by_type maps each class to its current tag (used on encode).
    """
    base: Any
    by_tag: Mapping[str, type]
    by_type: Mapping[type, str]

    @property
    def is_polymorphic(self) -> bool:
        return len(self.by_type) > 1

    @property
    def current_tags(self) -> Tuple[str, ...]:
        return tuple(self.by_type.values())

    def tag_for(self, value: Any) -> Optional[str]:
        return self.by_type.get(type(value))

    def class_for(self, tag: str) -> Optional[type]:
        return self.by_tag.get(tag)


@dataclass(frozen=True)
class FieldDescriptor:
    """One serialized field of a class."""
    name: str
    external_name: str
    mode: SerializationMode
    arity: Arity
    element_type: Any
    is_scalar: bool
    container: Optional[type] = None  # list or tuple, for collections
    inner_container: Optional[type] = None  # for REPEATED_OF_REPEATED
    wrapper_tag: Optional[str] = None
    tag_name: Optional[str] = None  # fixed block tag; None = runtime class name
    inner_tag: Optional[str] = None  # tag of wrapped scalar elements
    default_value: Optional[str] = None  # serialized form
    python_default: Any = NO_DEFAULT
    python_default_factory: Optional[Callable[[], Any]] = None
    obsolete_names: Tuple[str, ...] = ()
    include_empty: bool = False
    priority: int = 0
    registry: Optional[SubclassRegistry] = None
    checks: Tuple[Any, ...] = ()

    @property
    def marker_name(self) -> str:
        """Base name for null-/list-/empty- marker tags."""
        return self.tag_name or self.external_name

    @property
    def null_tag(self) -> str:
        return NULL_PREFIX + self.marker_name

    @property
    def list_tag(self) -> str:
        return LIST_PREFIX + self.marker_name

    @property
    def empty_tag(self) -> str:
        return EMPTY_PREFIX + self.marker_name

    @property
    def has_default(self) -> bool:
        return (
            self.default_value is not None
            or self.python_default is not NO_DEFAULT
            or self.python_default_factory is not None
        )

    @property
    def is_attribute(self) -> bool:
        return self.mode is SerializationMode.ATTRIBUTE


@dataclass(frozen=True)
class ProviderDescriptor:
    """A method (or field) producing values for dependency injection."""
    name: str
    function: Optional[Callable[..., Any]]  # None for field providers
    inputs: Tuple[Tuple[str, type, bool], ...]  # (parameter, type, optional)
    result_type: Optional[type]
    unwrap: bool
    affected_fields: Optional[FrozenSet[str]]
    local: bool
    propagates_to_children: bool
    optional: bool
    role: ProviderRole
    order: int
    target_field: Optional[str] = None
    source_field: Optional[str] = None  # set for field providers

    @property
    def required_types(self) -> Tuple[type, ...]:
        return tuple(t for _, t, optional in self.inputs if not optional)

    @property
    def is_dependency(self) -> bool:
        return self.role is ProviderRole.DEPENDENCY

    def invoke(self, obj: Any, args: Tuple[Any, ...]) -> Any:
        if self.source_field is not None:
            return getattr(obj, self.source_field)
        return self.function(obj, *args)

    def __repr__(self) -> str:
        return f"<provider {self.name} role={self.role.value} order={self.order}>"


@dataclass(frozen=True)
class ClassSchema:
    """Complete, immutable description of a serializable class."""
    cls: type
    tag: str
    obsolete_tags: Tuple[str, ...]
    fields: Tuple[FieldDescriptor, ...]
    constructor_fields: Tuple[FieldDescriptor, ...]
    constructor: Callable[..., Any]
    providers: Tuple[ProviderDescriptor, ...] = ()
    keyword_only: FrozenSet[str] = frozenset()
    block_injection: Tuple[type, ...] = ()
    ignorable_names: FrozenSet[str] = frozenset()
    ignore_unknown: bool = False
    debug_dependencies: bool = False
    # Lookup tables, built by the extractor
    field_by_name: Mapping[str, FieldDescriptor] = field(default_factory=lambda: MappingProxyType({}))
    # attribute name -> (field, is_current_name)
    attribute_index: Mapping[str, Tuple[FieldDescriptor, bool]] = field(default_factory=lambda: MappingProxyType({}))
    # child tag -> (field, role, is_current_name)
    tag_index: Mapping[str, Tuple[FieldDescriptor, TagRole, bool]] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def dependency_providers(self) -> Tuple[ProviderDescriptor, ...]:
        return tuple(p for p in self.providers if p.is_dependency)

    @property
    def consumer_providers(self) -> Tuple[ProviderDescriptor, ...]:
        """Checks and controllers: run after dependencies, results never injected."""
        return tuple(p for p in self.providers if not p.is_dependency)

    def provider(self, name: str) -> ProviderDescriptor:
        for p in self.providers:
            if p.name == name:
                return p
        raise KeyError(f"{self.cls.__qualname__} has no provider '{name}'")

    def blocks(self, value: Any) -> bool:
        """True if a propagated value of this type must not reach this class."""
        return any(isinstance(value, t) for t in self.block_injection)

    def is_ignorable(self, name: str) -> bool:
        return self.ignore_unknown or name in self.ignorable_names
