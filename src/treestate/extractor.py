"""
MetadataExtractor: class + metadata tags -> ClassSchema.

Pure and deterministic: the same class always yields a structurally identical
schema. All failures are SchemaError and are fatal for the class.

ALGORITHM:
  1. Find the canonical constructor (one @constructor method, else the
     dataclass __init__ fields, else the __init__ signature).
  2. For each constructor parameter, analyze its type (arity, element type),
     decide attribute vs block placement and the external naming.
  3. Build subclass registries for structured element types by walking the
     MRO of the declared type and every declared subclass.
  4. Collect providers from the MRO, base classes first, in definition order.
  5. Check naming invariants and build the lookup tables.
"""

import collections.abc
import dataclasses
import inspect
import logging
import types
from dataclasses import MISSING, is_dataclass
from types import MappingProxyType
from typing import (
    Annotated, Any, Callable, Dict, List, Optional, Tuple, Union,
    get_args, get_origin, get_type_hints,
)

from treestate.errors import DecodeError, SchemaError
from treestate.providers import ProviderRole, get_provider_tag
from treestate.scalars import is_scalar_type, parse_scalar, split_escaped
from treestate.schema import (
    Arity, ClassSchema, EMPTY_PREFIX, FieldDescriptor, LIST_PREFIX, NO_DEFAULT,
    NULL_PREFIX, ProviderDescriptor, SerializationMode, SubclassRegistry, TagRole,
)
from treestate.tags import (
    FieldTags, Text, XS_FIELD_KEY, class_obsolete_names, class_tag_name,
    declared_subclasses, get_class_tags, is_constructor, is_structured, is_tagged,
)

logger = logging.getLogger(__name__)

_NONE_TYPE = type(None)
_UNION_TYPE = getattr(types, 'UnionType', None)  # X | Y on Python 3.10+

_LIST_ORIGINS = (list, collections.abc.Sequence, collections.abc.MutableSequence)
_RESULT_CONTAINER_ORIGINS = (
    list, tuple, set, frozenset,
    collections.abc.Sequence, collections.abc.MutableSequence,
    collections.abc.Set, collections.abc.Iterable, collections.abc.Collection,
)


# =============================================================================
# TYPE ANALYSIS
# =============================================================================

def _strip_annotated(tp: Any) -> Tuple[Any, Tuple[Any, ...]]:
    if get_origin(tp) is Annotated:
        args = get_args(tp)
        return args[0], tuple(args[1:])
    return tp, ()


def is_union(tp: Any) -> bool:
    origin = get_origin(tp)
    return origin is Union or (_UNION_TYPE is not None and origin is _UNION_TYPE)


def _strip_optional(tp: Any) -> Tuple[Any, bool]:
    """Optional[X] -> (X, True). Unions of several classes are kept as a Union."""
    if not is_union(tp):
        return tp, False
    args = get_args(tp)
    remaining = tuple(a for a in args if a is not _NONE_TYPE)
    nullable = len(remaining) != len(args)
    if len(remaining) == 1:
        return remaining[0], nullable
    return Union[remaining], nullable


def _sequence_shape(tp: Any) -> Optional[Tuple[type, Any]]:
    """(container, element type) for list-like annotations, else None."""
    origin = get_origin(tp)
    args = get_args(tp)
    if origin is tuple:
        if len(args) == 2 and args[1] is Ellipsis:
            return tuple, args[0]
        return None
    if origin in _LIST_ORIGINS:
        return list, (args[0] if args else Any)
    return None


def _union_members(tp: Any) -> Tuple[Any, ...]:
    return get_args(tp) if is_union(tp) else (tp,)


def _registry_roots(tp: Any) -> List[type]:
    """Every class whose subclass registry may apply to a field of type tp."""
    return [klass for member in _union_members(tp) for klass in member.__mro__ if is_tagged(klass)]


# =============================================================================
# EXTRACTOR
# =============================================================================

class MetadataExtractor:
    """
    Builds ClassSchema and SubclassRegistry objects.

    Args:
        registry_lookup: Callable returning the SubclassRegistry of a declared
            type. SchemaRegistry passes its cached lookup; by default
            registries are rebuilt on every call.
    """

    def __init__(self, registry_lookup: Optional[Callable[[Any], SubclassRegistry]] = None):
        self._registry_lookup = registry_lookup or self.build_registry

    # ---------------------------------------------------------------- registry

    def build_registry(self, base: Any) -> SubclassRegistry:
        """
        Collect the concrete classes a field of declared type ``base`` may hold.

        Registries may be declared on any ancestor of base and on intermediate
        classes; only classes that are subclasses of base are kept.
        """
        variants: Dict[type, None] = {}
        for member in _union_members(base):
            if not is_structured(member):
                raise SchemaError(None, f"{member!r} is not a serializable class")
            for cls in self._collect_variants(member):
                variants[cls] = None

        by_tag: Dict[str, type] = {}
        by_type: Dict[type, str] = {}
        for cls in variants:
            if inspect.isabstract(cls):
                continue
            tag = class_tag_name(cls)
            for name in (tag,) + class_obsolete_names(cls):
                existing = by_tag.get(name)
                if existing is not None and existing is not cls:
                    raise SchemaError(
                        cls,
                        f"discriminant tag '{name}' is already used by {existing.__qualname__}",
                    )
                by_tag[name] = cls
            by_type[cls] = tag

        logger.debug(f"Subclass registry for {base!r}: {sorted(by_tag)}")
        return SubclassRegistry(
            base=base,
            by_tag=MappingProxyType(by_tag),
            by_type=MappingProxyType(by_type),
        )

    def _collect_variants(self, base: type) -> List[type]:
        found: List[type] = [base]
        seen = {base}

        def visit(declarer: type) -> None:
            for sub in declared_subclasses(declarer):
                if not issubclass(sub, declarer):
                    raise SchemaError(
                        declarer,
                        f"subclass registry lists {sub.__qualname__}, which is not a subclass",
                    )
                if sub in seen:
                    continue
                seen.add(sub)
                if issubclass(sub, base):
                    found.append(sub)
                visit(sub)

        for klass in base.__mro__:
            if is_tagged(klass):
                visit(klass)
        return found

    # ---------------------------------------------------------------- schema

    def extract(self, cls: type) -> ClassSchema:
        """
        Build the schema of cls.

        Raises:
            SchemaError: if the class or its metadata is inconsistent
        """
        if not is_structured(cls):
            raise SchemaError(cls, "not a serializable class (use Serializable, @xs or @dataclass)")

        class_tags = get_class_tags(cls)
        factory, params, keyword_only = self._find_constructor(cls)

        constructor_fields: List[FieldDescriptor] = []
        field_tags: Dict[str, FieldTags] = {}
        for name, annotation, tags, py_default, py_factory in params:
            field_tags[name] = tags
            constructor_fields.append(
                self._build_field(cls, name, annotation, tags, py_default, py_factory, class_tags)
            )

        ordered_fields = tuple(sorted(constructor_fields, key=lambda fd: fd.priority))
        field_by_name = {fd.name: fd for fd in constructor_fields}
        attribute_index, tag_index = self._build_indexes(cls, ordered_fields)

        providers = self._extract_providers(cls, constructor_fields, field_tags)

        block_injection = tuple(class_tags.get('block_injection', ()))
        for blocked in block_injection:
            if not isinstance(blocked, type):
                raise SchemaError(cls, f"block_injection entry {blocked!r} is not a type")

        schema = ClassSchema(
            cls=cls,
            tag=class_tag_name(cls),
            obsolete_tags=class_obsolete_names(cls),
            fields=ordered_fields,
            constructor_fields=tuple(constructor_fields),
            constructor=factory,
            providers=providers,
            keyword_only=frozenset(keyword_only),
            block_injection=block_injection,
            ignorable_names=frozenset(class_tags.get('ignorable_names', ())),
            ignore_unknown=bool(class_tags.get('ignore_unknown', False)),
            debug_dependencies=bool(class_tags.get('debug_dependencies', False)),
            field_by_name=MappingProxyType(field_by_name),
            attribute_index=MappingProxyType(attribute_index),
            tag_index=MappingProxyType(tag_index),
        )
        logger.debug(
            f"Extracted schema for {cls.__qualname__}: "
            f"fields={[fd.name for fd in ordered_fields]} providers={[p.name for p in providers]}"
        )
        return schema

    def _find_constructor(self, cls: type):
        """Returns (factory, [(name, annotation, tags, default, default_factory)], keyword_only)."""
        for klass in cls.__mro__:
            marked = [name for name, attr in klass.__dict__.items() if is_constructor(attr)]
            if len(marked) > 1:
                raise SchemaError(cls, f"more than one canonical constructor: {', '.join(marked)}")
            if marked:
                factory = getattr(cls, marked[0])
                return self._signature_params(cls, factory, inspect.unwrap(factory))

        if is_dataclass(cls):
            hints = self._type_hints(cls, cls)
            params = []
            keyword_only = []
            for f in dataclasses.fields(cls):
                if not f.init:
                    continue
                tags = f.metadata.get(XS_FIELD_KEY) or self._annotated_tags(hints[f.name]) or FieldTags()
                default = f.default if f.default is not MISSING else NO_DEFAULT
                factory = f.default_factory if f.default_factory is not MISSING else None
                params.append((f.name, hints[f.name], tags, default, factory))
                if getattr(f, 'kw_only', False) is True:
                    keyword_only.append(f.name)
            return cls, params, keyword_only

        return self._signature_params(cls, cls, cls.__init__)

    def _signature_params(self, cls: type, factory: Callable, hint_source: Any):
        try:
            signature = inspect.signature(factory)
        except (TypeError, ValueError) as e:
            raise SchemaError(cls, f"cannot read constructor signature: {e}") from e
        hints = self._type_hints(cls, hint_source)
        params = []
        keyword_only = []
        for param in signature.parameters.values():
            if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
                raise SchemaError(cls, f"constructor parameter *{param.name} cannot be serialized")
            if param.name not in hints:
                raise SchemaError(cls, f"constructor parameter '{param.name}' has no type annotation")
            annotation = hints[param.name]
            tags = self._annotated_tags(annotation) or FieldTags()
            default = param.default if param.default is not inspect.Parameter.empty else NO_DEFAULT
            params.append((param.name, annotation, tags, default, None))
            if param.kind is inspect.Parameter.KEYWORD_ONLY:
                keyword_only.append(param.name)
        return factory, params, keyword_only

    @staticmethod
    def _type_hints(cls: type, source: Any) -> Dict[str, Any]:
        try:
            return get_type_hints(source, include_extras=True)
        except Exception as e:
            raise SchemaError(cls, f"cannot resolve type annotations: {e}") from e

    @staticmethod
    def _annotated_tags(annotation: Any) -> Optional[FieldTags]:
        _, extras = _strip_annotated(annotation)
        for extra in extras:
            if isinstance(extra, FieldTags):
                return extra
        return None

    # ---------------------------------------------------------------- fields

    def _analyze_type(self, cls: type, name: str, annotation: Any):
        """Returns (arity, element_type, container, inner_container)."""
        tp, _ = _strip_annotated(annotation)
        tp, nullable = _strip_optional(tp)

        outer = _sequence_shape(tp)
        if outer is None:
            return (Arity.OPTIONAL if nullable else Arity.SINGLE), tp, None, None

        container, element = outer
        element, _ = _strip_optional(_strip_annotated(element)[0])
        inner = _sequence_shape(element)
        if inner is None:
            return Arity.REPEATED, element, container, None

        inner_container, inner_element = inner
        inner_element, _ = _strip_optional(_strip_annotated(inner_element)[0])
        if _sequence_shape(inner_element) is not None:
            raise SchemaError(cls, f"field '{name}': collections nested more than two deep are not supported")
        return Arity.REPEATED_OF_REPEATED, inner_element, container, inner_container

    def _build_field(
        self,
        cls: type,
        name: str,
        annotation: Any,
        tags: FieldTags,
        py_default: Any,
        py_factory: Optional[Callable[[], Any]],
        class_tags: Dict[str, Any],
    ) -> FieldDescriptor:
        arity, element, container, inner_container = self._analyze_type(cls, name, annotation)
        scalar = is_scalar_type(element)

        registry = None
        if not scalar:
            if not all(is_structured(m) for m in _union_members(element)):
                raise SchemaError(cls, f"field '{name}': unsupported type {element!r}")
            registry = self._registry_lookup(element)
            if not registry.by_type:
                raise SchemaError(cls, f"field '{name}': no concrete class registered for {element!r}")
            if tags.polymorphic and not any(declared_subclasses(k) for k in _registry_roots(element)):
                raise SchemaError(cls, f"field '{name}': polymorphic type {element!r} has no subclass registry")

        if tags.as_attribute and (tags.as_block or tags.wrapper is not None):
            raise SchemaError(cls, f"field '{name}': as_attribute conflicts with block placement")

        if not scalar:
            if tags.as_attribute:
                raise SchemaError(cls, f"field '{name}': a structured value cannot be an attribute")
            mode = SerializationMode.BLOCK
        elif arity is Arity.REPEATED_OF_REPEATED:
            if tags.as_attribute:
                raise SchemaError(cls, f"field '{name}': a list of lists cannot be an attribute")
            mode = SerializationMode.BLOCK
        elif tags.as_block or tags.wrapper is not None:
            mode = SerializationMode.BLOCK
        elif tags.as_attribute:
            mode = SerializationMode.ATTRIBUTE
        elif issubclass(element, Text):
            mode = SerializationMode.BLOCK
        else:
            mode = SerializationMode.ATTRIBUTE

        external_name = tags.name or name
        wrapper_tag = tag_name = inner_tag = None
        if mode is SerializationMode.BLOCK:
            if tags.wrapper is not None:
                wrapper_tag = tags.wrapper or external_name
                if scalar:
                    inner_tag = element.__name__
            elif tags.name:
                if registry is not None and registry.is_polymorphic:
                    raise SchemaError(
                        cls,
                        f"field '{name}': explicit name on a polymorphic field; declare a wrapper instead",
                    )
                tag_name = tags.name
            elif scalar:
                tag_name = name

        if tags.default_value is not None:
            self._check_default(cls, name, tags.default_value, element, arity, scalar)

        return FieldDescriptor(
            name=name,
            external_name=external_name,
            mode=mode,
            arity=arity,
            element_type=element,
            is_scalar=scalar,
            container=container,
            inner_container=inner_container,
            wrapper_tag=wrapper_tag,
            tag_name=tag_name,
            inner_tag=inner_tag,
            default_value=tags.default_value,
            python_default=py_default,
            python_default_factory=py_factory,
            obsolete_names=tags.obsolete_names,
            include_empty=tags.include_empty or bool(class_tags.get('include_empty', False)),
            priority=tags.priority,
            registry=registry,
            checks=tags.checks,
        )

    @staticmethod
    def _check_default(cls, name, text, element, arity, scalar) -> None:
        if not scalar or arity is Arity.REPEATED_OF_REPEATED:
            raise SchemaError(cls, f"field '{name}': default_value is only supported for scalar fields")
        try:
            items = split_escaped(text) if arity.is_collection else [text]
            for item in items:
                parse_scalar(item, element)
        except DecodeError as e:
            raise SchemaError(cls, f"field '{name}': invalid default_value: {e}") from e

    # ---------------------------------------------------------------- naming

    def _build_indexes(self, cls: type, fields: Tuple[FieldDescriptor, ...]):
        attribute_index: Dict[str, Tuple[FieldDescriptor, bool]] = {}
        tag_index: Dict[str, Tuple[FieldDescriptor, TagRole, bool]] = {}

        def claim_attribute(name: str, fd: FieldDescriptor, current: bool) -> None:
            existing = attribute_index.get(name)
            if existing is not None and existing[0] is not fd:
                raise SchemaError(cls, f"attribute name '{name}' used by '{existing[0].name}' and '{fd.name}'")
            if existing is None or current:
                attribute_index[name] = (fd, current)

        def claim_tag(name: str, fd: FieldDescriptor, role: TagRole, current: bool) -> None:
            existing = tag_index.get(name)
            if existing is not None and existing[0] is not fd:
                raise SchemaError(cls, f"tag '{name}' used by '{existing[0].name}' and '{fd.name}'")
            if existing is None or current:
                tag_index[name] = (fd, role, current)

        for fd in fields:
            if fd.is_attribute:
                claim_attribute(fd.external_name, fd, True)
                for old in fd.obsolete_names:
                    claim_attribute(old, fd, False)
                continue

            if fd.wrapper_tag is not None:
                claim_tag(fd.wrapper_tag, fd, TagRole.WRAPPER, True)
                for old in fd.obsolete_names:
                    claim_tag(old, fd, TagRole.WRAPPER, False)
            elif fd.tag_name is not None:
                claim_tag(fd.tag_name, fd, TagRole.ELEMENT, True)
                for old in fd.obsolete_names:
                    claim_tag(old, fd, TagRole.ELEMENT, False)
            else:
                current_tags = set(fd.registry.current_tags)
                for tag in fd.registry.by_tag:
                    claim_tag(tag, fd, TagRole.ELEMENT, tag in current_tags)

            if fd.arity.is_collection and fd.wrapper_tag is None:
                marker_names = (fd.marker_name,) + fd.obsolete_names
                for index, marker in enumerate(marker_names):
                    current = index == 0
                    claim_tag(NULL_PREFIX + marker, fd, TagRole.NULL, current)
                    claim_tag(EMPTY_PREFIX + marker, fd, TagRole.EMPTY, current)
                    if fd.arity is Arity.REPEATED_OF_REPEATED:
                        claim_tag(LIST_PREFIX + marker, fd, TagRole.LIST, current)

        return attribute_index, tag_index

    # ---------------------------------------------------------------- providers

    def _extract_providers(
        self,
        cls: type,
        fields: List[FieldDescriptor],
        field_tags: Dict[str, FieldTags],
    ) -> Tuple[ProviderDescriptor, ...]:
        providers: List[ProviderDescriptor] = []
        field_names = {fd.name for fd in fields}

        for fd in fields:
            tags = field_tags[fd.name]
            if not (tags.provides or tags.propagate_to_children):
                continue
            providers.append(ProviderDescriptor(
                name=fd.name,
                function=None,
                inputs=(),
                result_type=None,
                unwrap=fd.arity.is_collection,
                affected_fields=frozenset({fd.name}),
                local=tags.provides,
                propagates_to_children=tags.propagate_to_children,
                optional=False,
                role=ProviderRole.DEPENDENCY,
                order=len(providers),
                source_field=fd.name,
            ))

        # Definition order, base classes first; an override keeps its base's slot
        method_names: Dict[str, None] = {}
        for klass in reversed(cls.__mro__):
            for name in klass.__dict__:
                method_names.setdefault(name, None)

        controlled: Dict[Tuple[ProviderRole, str], str] = {}
        for name in method_names:
            func = inspect.getattr_static(cls, name, None)
            if not callable(func):
                continue
            tag = get_provider_tag(func)
            if tag is None:
                continue

            if tag.target_field is not None and tag.target_field not in field_names:
                raise SchemaError(cls, f"{name} targets unknown field '{tag.target_field}'")
            if tag.role in (ProviderRole.ENABLED, ProviderRole.VISIBLE):
                key = (tag.role, tag.target_field)
                if key in controlled:
                    raise SchemaError(
                        cls,
                        f"field '{tag.target_field}' has two {tag.role.value} controllers: "
                        f"{controlled[key]} and {name}",
                    )
                controlled[key] = name
            if tag.affected_fields is not None:
                unknown = tag.affected_fields - field_names
                if unknown:
                    raise SchemaError(cls, f"{name} declares unknown affected fields {sorted(unknown)}")

            inputs, result_type, unwrap = self._provider_signature(cls, name, func)
            providers.append(ProviderDescriptor(
                name=name,
                function=func,
                inputs=inputs,
                result_type=result_type,
                unwrap=unwrap,
                affected_fields=tag.affected_fields,
                local=tag.local,
                propagates_to_children=tag.propagate,
                optional=tag.optional,
                role=tag.role,
                order=len(providers),
                target_field=tag.target_field,
            ))

        return tuple(providers)

    def _provider_signature(self, cls: type, name: str, func: Callable):
        try:
            signature = inspect.signature(func)
        except (TypeError, ValueError) as e:
            raise SchemaError(cls, f"provider {name}: cannot read signature: {e}") from e
        hints = self._type_hints(cls, func)

        inputs: List[Tuple[str, type, bool]] = []
        for param in list(signature.parameters.values())[1:]:  # skip self
            if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
                raise SchemaError(cls, f"provider {name}: *{param.name} cannot be injected")
            if param.name not in hints:
                raise SchemaError(cls, f"provider {name}: parameter '{param.name}' has no type annotation")
            tp, optional = _strip_optional(_strip_annotated(hints[param.name])[0])
            if not isinstance(tp, type):
                raise SchemaError(cls, f"provider {name}: parameter '{param.name}' must be annotated with a class")
            inputs.append((param.name, tp, optional))

        result_type, unwrap = self._result_shape(hints.get('return'))
        return tuple(inputs), result_type, unwrap

    @staticmethod
    def _result_shape(annotation: Any) -> Tuple[Optional[type], bool]:
        """(element type, unwrap) of a provider's return annotation."""
        if annotation is None or annotation is _NONE_TYPE:
            return None, False
        tp, _ = _strip_annotated(annotation)
        tp, _ = _strip_optional(tp)
        origin = get_origin(tp)
        if origin in _RESULT_CONTAINER_ORIGINS:
            args = [a for a in get_args(tp) if a is not Ellipsis]
            element = args[0] if len(args) == 1 and isinstance(args[0], type) else None
            return element, True
        if tp in (list, tuple, set, frozenset):
            return None, True
        return (tp if isinstance(tp, type) else None), False
