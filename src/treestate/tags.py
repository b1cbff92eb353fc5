"""
Declarative metadata for serializable classes and their fields.

Class-level tags use the same mechanism as parametric axes: keyword arguments
in the class statement, handled by ``__init_subclass__``.

Usage (class statement syntax - PREFERRED):
    from treestate import Serializable, xs_field

    @dataclass
    class Shape(Serializable, subclasses=("Circle", "Square")):
        label: str = xs_field(name="id", default="")

    @dataclass
    class Circle(Shape):
        radius: float = 1.0

Usage (decorator - when the base class can't be changed):
    @xs(name="point", ignorable_names=("z",))
    @dataclass
    class Point:
        x: int
        y: int

Field-level tags live in the dataclass field metadata (``xs_field``) or in an
``Annotated[T, xs_tags(...)]`` annotation for classes that are not dataclasses.

Inheritance:
    ignorable_names, ignore_unknown, block_injection, include_empty and
    debug_dependencies are inherited and merged per key using MRO order.
    name, subclasses and obsolete_names belong to the declaring class only.
"""

import sys
from dataclasses import dataclass, field, is_dataclass, MISSING
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

from treestate.errors import SchemaError

# Key under which FieldTags are stored in dataclass field metadata
XS_FIELD_KEY = 'treestate'

CLASS_TAG_KEYS = frozenset({
    'name',
    'subclasses',
    'obsolete_names',
    'ignorable_names',
    'ignore_unknown',
    'block_injection',
    'include_empty',
    'debug_dependencies',
})

INHERITED_CLASS_TAGS = frozenset({
    'ignorable_names',
    'ignore_unknown',
    'block_injection',
    'include_empty',
    'debug_dependencies',
})

_OWN_TAGS_ATTR = '__xs_own_tags__'
_CONSTRUCTOR_ATTR = '__xs_constructor__'


class Text(str):
    """
    String whose whitespace must survive serialization.

    Attributes in XML-like formats do not preserve runs of whitespace, so a
    field annotated with Text is written as a block unless forced to attribute
    form. Plain ``str`` values are accepted for Text fields.
    """


@dataclass(frozen=True)
class FieldTags:
    """Serialization and editing metadata attached to one field."""
    name: Optional[str] = None
    wrapper: Optional[str] = None  # "" means "use the field name"
    as_attribute: bool = False
    as_block: bool = False
    obsolete_names: Tuple[str, ...] = ()
    include_empty: bool = False
    default_value: Optional[str] = None  # serialized form
    priority: int = 0
    polymorphic: bool = False
    provides: bool = False
    propagate_to_children: bool = False
    checks: Tuple[Any, ...] = ()


def xs_tags(
    *,
    name: Optional[str] = None,
    wrapper: Optional[str] = None,
    as_attribute: bool = False,
    as_block: bool = False,
    obsolete_names: Sequence[str] = (),
    include_empty: bool = False,
    default_value: Optional[str] = None,
    priority: int = 0,
    polymorphic: bool = False,
    provides: bool = False,
    propagate_to_children: bool = False,
    checks: Sequence[Any] = (),
) -> FieldTags:
    """Build FieldTags, normalizing sequences to tuples."""
    return FieldTags(
        name=name,
        wrapper=wrapper,
        as_attribute=as_attribute,
        as_block=as_block,
        obsolete_names=tuple(obsolete_names),
        include_empty=include_empty,
        default_value=default_value,
        priority=priority,
        polymorphic=polymorphic,
        provides=provides,
        propagate_to_children=propagate_to_children,
        checks=tuple(checks),
    )


def xs_field(
    *,
    name: Optional[str] = None,
    wrapper: Optional[str] = None,
    as_attribute: bool = False,
    as_block: bool = False,
    obsolete_names: Sequence[str] = (),
    include_empty: bool = False,
    default_value: Optional[str] = None,
    priority: int = 0,
    polymorphic: bool = False,
    provides: bool = False,
    propagate_to_children: bool = False,
    checks: Sequence[Any] = (),
    default: Any = MISSING,
    default_factory: Any = MISSING,
    **field_kwargs,
):
    """
    dataclasses.field() carrying treestate metadata.

    Args:
        name: Explicit external name (attribute name or block tag)
        wrapper: Enclosing tag around the field's normal serialization
        as_attribute: Force attribute placement (e.g. for Text)
        as_block: Force block placement (e.g. for int)
        obsolete_names: Names accepted on decode, never written
        include_empty: Emit an explicit marker for empty collections
        default_value: Serialized default used when the field is absent
        priority: Ordering priority; higher values come later
        polymorphic: Require a subclass registry for the element type
        provides: Make the field value available for dependency injection
        propagate_to_children: Pass the field value down to children
        checks: Built-in field checks (see treestate.validation)
        default, default_factory, **field_kwargs: passed to dataclasses.field()
    """
    tags = xs_tags(
        name=name,
        wrapper=wrapper,
        as_attribute=as_attribute,
        as_block=as_block,
        obsolete_names=obsolete_names,
        include_empty=include_empty,
        default_value=default_value,
        priority=priority,
        polymorphic=polymorphic,
        provides=provides,
        propagate_to_children=propagate_to_children,
        checks=checks,
    )
    metadata = dict(field_kwargs.pop('metadata', None) or {})
    metadata[XS_FIELD_KEY] = tags
    return field(default=default, default_factory=default_factory, metadata=metadata, **field_kwargs)


# =============================================================================
# CLASS TAGS
# =============================================================================

def _apply_class_tags(cls: type, tags: Dict[str, Any]) -> None:
    unknown = set(tags) - CLASS_TAG_KEYS
    if unknown:
        raise TypeError(f"{cls.__qualname__}: unknown class tag(s) {sorted(unknown)}")
    own = dict(cls.__dict__.get(_OWN_TAGS_ATTR, {}))
    own.update(tags)
    setattr(cls, _OWN_TAGS_ATTR, MappingProxyType(own))


class Serializable:
    """
    Base class that enables ``class Foo(Serializable, name=..., ...)`` syntax.

    Any subclass is structured: it is serialized through its ClassSchema.
    """

    def __init_subclass__(cls, **tags):
        super().__init_subclass__()
        _apply_class_tags(cls, tags)


def xs(**tags) -> Callable[[type], type]:
    """
    Decorator to attach class tags to a class definition.

    Alternative to inheriting from Serializable. The class is returned
    unchanged apart from the tag mapping, so it composes with @dataclass.
    """
    def decorator(cls: type) -> type:
        _apply_class_tags(cls, tags)
        return cls
    return decorator


def get_own_class_tags(cls: type) -> Mapping[str, Any]:
    """Tags declared on cls itself (not inherited)."""
    return cls.__dict__.get(_OWN_TAGS_ATTR, MappingProxyType({}))


def get_class_tags(cls: type) -> Dict[str, Any]:
    """All tags in effect for cls: inheritable tags merged in MRO order, own tags last."""
    merged: Dict[str, Any] = {}
    for klass in reversed(cls.__mro__):
        for key, value in get_own_class_tags(klass).items():
            if klass is cls or key in INHERITED_CLASS_TAGS:
                merged[key] = value
    return merged


def is_tagged(cls: Any) -> bool:
    """True if cls or one of its ancestors was declared with class tags."""
    if not isinstance(cls, type):
        return False
    return any(_OWN_TAGS_ATTR in klass.__dict__ for klass in cls.__mro__)


def is_structured(cls: Any) -> bool:
    """True if values of cls are serialized through a ClassSchema."""
    return isinstance(cls, type) and (is_tagged(cls) or is_dataclass(cls))


def class_tag_name(cls: type) -> str:
    """Discriminant tag of a class: its explicit name tag, else its class name."""
    return get_own_class_tags(cls).get('name') or cls.__name__


def class_obsolete_names(cls: type) -> Tuple[str, ...]:
    return tuple(get_own_class_tags(cls).get('obsolete_names', ()))


def _lookup_by_name(owner: type, dotted: str) -> Any:
    module = sys.modules.get(owner.__module__)
    target: Any = module
    for part in dotted.split('.'):
        target = getattr(target, part, None)
        if target is None:
            raise SchemaError(owner, f"subclass '{dotted}' not found in module {owner.__module__}")
    return target


def declared_subclasses(cls: type) -> Tuple[type, ...]:
    """
    Resolve the ``subclasses`` tag declared on cls itself.

    Entries may be classes, names looked up in the declaring class's module
    (forward references), or zero-argument callables returning a class or a
    sequence of classes.
    """
    resolved = []
    for entry in get_own_class_tags(cls).get('subclasses', ()):
        if isinstance(entry, str):
            entry = _lookup_by_name(cls, entry)
        elif callable(entry) and not isinstance(entry, type):
            entry = entry()
        entries = entry if isinstance(entry, (list, tuple)) else (entry,)
        for item in entries:
            if not isinstance(item, type):
                raise SchemaError(cls, f"subclass registry entry {item!r} is not a class")
            resolved.append(item)
    return tuple(resolved)


# =============================================================================
# CANONICAL CONSTRUCTOR
# =============================================================================

def constructor(func):
    """
    Mark the factory used to rebuild instances on decode.

    Works with classmethod/staticmethod in either decorator order. At most one
    method per class may carry the mark.
    """
    target = func.__func__ if isinstance(func, (classmethod, staticmethod)) else func
    setattr(target, _CONSTRUCTOR_ATTR, True)
    return func


def is_constructor(attr: Any) -> bool:
    target = attr.__func__ if isinstance(attr, (classmethod, staticmethod)) else attr
    return bool(getattr(target, _CONSTRUCTOR_ATTR, False))
