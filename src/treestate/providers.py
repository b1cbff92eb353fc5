"""
Method decorators declaring providers, error checks and controllers.

Each decorator attaches an immutable ProviderTag to the function. The
MetadataExtractor turns tagged methods into ProviderDescriptors; arguments of
the method (other than self) are filled by dependency injection, matched by
their type annotation.

    @dataclass
    class Document(Serializable):
        title: str

        @provider(affected_fields=("title",), propagate_to_children=True)
        def heading(self) -> Heading:
            return Heading(self.title.upper())

        @error_check("title")
        def title_unique(self, index: TitleIndex):
            ...
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, FrozenSet, Optional, Sequence

PROVIDER_ATTR = '__xs_provider__'


class ProviderRole(Enum):
    DEPENDENCY = "dependency"
    ERROR_CHECK = "error_check"
    ENABLED = "enabled"
    VISIBLE = "visible"


@dataclass(frozen=True)
class ProviderTag:
    """Metadata attached to a provider function."""
    role: ProviderRole = ProviderRole.DEPENDENCY
    local: bool = True
    propagate: bool = False
    affected_fields: Optional[FrozenSet[str]] = None
    optional: bool = False
    target_field: Optional[str] = None


def get_provider_tag(func) -> Optional[ProviderTag]:
    return getattr(func, PROVIDER_ATTR, None)


def _attach(func, tag: ProviderTag):
    setattr(func, PROVIDER_ATTR, tag)
    return func


def _affected(affected_fields: Optional[Sequence[str]]) -> Optional[FrozenSet[str]]:
    return None if affected_fields is None else frozenset(affected_fields)


def provider(
    func: Optional[Callable] = None,
    *,
    affected_fields: Optional[Sequence[str]] = None,
    propagate_to_children: bool = False,
    optional: bool = False,
):
    """
    Declare a method whose result is available for dependency injection.

    If the declared result type is a container (list, tuple, set, Optional),
    its elements are added individually.

    Args:
        affected_fields: Fields the result depends on. None means undeclared
            (always recomputed after an edit); an empty sequence means the
            result depends only on the injected arguments.
        propagate_to_children: Also pass the result down to child objects.
        optional: Do not fail resolution if the inputs never become available.
    """
    def decorator(f):
        existing = get_provider_tag(f) or ProviderTag()
        return _attach(f, replace(
            existing,
            role=ProviderRole.DEPENDENCY,
            local=True,
            propagate=existing.propagate or propagate_to_children,
            affected_fields=_affected(affected_fields) if affected_fields is not None else existing.affected_fields,
            optional=optional or existing.optional,
        ))

    if func is not None:
        return decorator(func)
    return decorator


def propagate_to_children(func):
    """
    Pass the method's result down to children.

    On its own (without @provider) the result reaches children only, not the
    object itself. Combined with BlockDependencyInjection on the children, this
    lets a nested object of the same class replace a value it inherited.
    """
    existing = get_provider_tag(func)
    if existing is None:
        return _attach(func, ProviderTag(local=False, propagate=True))
    return _attach(func, replace(existing, propagate=True))


def only_affected_by(*fields: str):
    """Decorator form of ``provider(affected_fields=...)``. Apply above @provider."""
    def decorator(f):
        existing = get_provider_tag(f) or ProviderTag()
        return _attach(f, replace(existing, affected_fields=frozenset(fields)))
    return decorator


def error_check(field: Optional[str] = None, *, affected_fields: Optional[Sequence[str]] = None):
    """
    Declare a validation method.

    The method returns None, a ValidationResult, or an iterable of them. It
    runs after dependency resolution and never raises for findings.
    """
    def decorator(f):
        return _attach(f, ProviderTag(
            role=ProviderRole.ERROR_CHECK,
            local=False,
            affected_fields=_affected(affected_fields),
            target_field=field,
        ))
    return decorator


def enabled_controller(field: str, *, affected_fields: Optional[Sequence[str]] = None):
    """Method returning whether ``field`` is enabled. May return a pending future."""
    def decorator(f):
        return _attach(f, ProviderTag(
            role=ProviderRole.ENABLED,
            local=False,
            affected_fields=_affected(affected_fields),
            target_field=field,
        ))
    return decorator


def visibility_controller(field: str, *, affected_fields: Optional[Sequence[str]] = None):
    """Method returning whether ``field`` is visible. May return a pending future."""
    def decorator(f):
        return _attach(f, ProviderTag(
            role=ProviderRole.VISIBLE,
            local=False,
            affected_fields=_affected(affected_fields),
            target_field=field,
        ))
    return decorator
