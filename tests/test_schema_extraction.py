"""
Tests for schema extraction and the schema registry.

Tests cover:
- Field placement (attribute vs block), naming, arity
- Ordering priority
- Subclass registries declared on ancestors, obsolete tags, abstract classes
- Canonical constructors
- Provider discovery order
- SchemaError cases
- Schema cache publication under concurrent first use
"""

import concurrent.futures
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple

import pytest

from treestate import (
    Arity,
    MetadataExtractor,
    ProviderRole,
    SchemaError,
    SchemaRegistry,
    Serializable,
    SerializationMode,
    Text,
    constructor,
    enabled_controller,
    error_check,
    get_class_tags,
    propagate_to_children,
    provider,
    xs,
    xs_field,
)


class Color(Enum):
    RED = 1
    GREEN = 2


@dataclass
class Point(Serializable):
    x: int = 0
    y: int = 0


@dataclass
class Shape(Serializable, subclasses=("Circle", "Square")):
    label: str = ""


@dataclass
class Circle(Shape):
    radius: float = 1.0


@dataclass
class Square(Shape, name="square", obsolete_names=("box",)):
    side: float = 1.0


@dataclass
class Drawing(Serializable, ignorable_names=("legacy",)):
    title: str = ""
    tags: List[str] = field(default_factory=list)
    notes: Text = Text("")
    origin: Optional[Point] = None
    shapes: List[Shape] = xs_field(wrapper="", default_factory=list)
    extras: List[Shape] = field(default_factory=list)
    grid: List[List[int]] = field(default_factory=list)
    color: Color = Color.RED
    count: int = xs_field(default=0, as_block=True)


@dataclass
class Animal(Serializable, subclasses=("Dog", "Cat", "Puppy")):
    name: str = ""


@dataclass
class Dog(Animal):
    pass


@dataclass
class Puppy(Dog):
    pass


@dataclass
class Cat(Animal):
    pass


class Expr(Serializable, ABC, subclasses=(lambda: Const,)):

    @abstractmethod
    def evaluate(self) -> int:
        ...


@dataclass
class Const(Expr):
    value: int = 0

    def evaluate(self) -> int:
        return self.value


@dataclass(frozen=True)
class Money(Serializable):
    cents: int
    currency: str = "EUR"

    @property
    def amount(self) -> Decimal:
        return Decimal(self.cents) / 100

    @constructor
    @classmethod
    def of(cls, amount: Decimal, currency: str = "EUR"):
        return cls(int(amount * 100), currency)


class TestFieldPlacement:
    """Test how fields map onto attributes and blocks."""

    def test_declaration_order(self):
        """Fields keep declaration order."""
        schema = SchemaRegistry.get(Drawing)

        assert [fd.name for fd in schema.fields] == [
            "title", "tags", "notes", "origin", "shapes", "extras", "grid", "color", "count",
        ]
        assert schema.tag == "Drawing"

    def test_scalars_are_attributes(self):
        """Scalar fields default to attributes."""
        schema = SchemaRegistry.get(Drawing)

        assert schema.field_by_name["title"].mode is SerializationMode.ATTRIBUTE
        assert schema.field_by_name["tags"].mode is SerializationMode.ATTRIBUTE
        assert schema.field_by_name["color"].mode is SerializationMode.ATTRIBUTE

    def test_text_and_forced_blocks(self):
        """Text and as_block fields are blocks."""
        schema = SchemaRegistry.get(Drawing)

        notes = schema.field_by_name["notes"]
        count = schema.field_by_name["count"]
        assert notes.mode is SerializationMode.BLOCK
        assert notes.tag_name == "notes"
        assert count.mode is SerializationMode.BLOCK
        assert count.tag_name == "count"

    def test_structured_fields_use_class_names(self):
        """Structured fields are tagged by class name."""
        schema = SchemaRegistry.get(Drawing)

        origin = schema.field_by_name["origin"]
        assert origin.mode is SerializationMode.BLOCK
        assert origin.tag_name is None
        assert origin.arity is Arity.OPTIONAL

    def test_arity_and_containers(self):
        """Arity and container are read from the annotation."""
        schema = SchemaRegistry.get(Drawing)

        assert schema.field_by_name["tags"].arity is Arity.REPEATED
        assert schema.field_by_name["tags"].container is list
        grid = schema.field_by_name["grid"]
        assert grid.arity is Arity.REPEATED_OF_REPEATED
        assert grid.element_type is int
        assert grid.list_tag == "list-grid"

    def test_tuple_container(self):
        """Variadic tuples are collections."""
        @dataclass
        class Series(Serializable):
            values: Tuple[int, ...] = ()

        fd = SchemaRegistry.get(Series).field_by_name["values"]
        assert fd.arity is Arity.REPEATED
        assert fd.container is tuple

    def test_wrapper_defaults_to_field_name(self):
        """Empty wrapper name means the field name."""
        shapes = SchemaRegistry.get(Drawing).field_by_name["shapes"]

        assert shapes.wrapper_tag == "shapes"

    def test_priority_moves_field_later(self):
        """Higher priority fields come later."""
        @dataclass
        class Ordered(Serializable):
            late: int = xs_field(default=0, priority=1)
            early: int = 0

        schema = SchemaRegistry.get(Ordered)
        assert [fd.name for fd in schema.fields] == ["early", "late"]
        assert [fd.name for fd in schema.constructor_fields] == ["late", "early"]

    def test_tag_index_marks_obsolete_class_tags(self):
        """Obsolete class tags are indexed as not current."""
        schema = SchemaRegistry.get(Drawing)

        fd, _, current = schema.tag_index["box"]
        assert fd.name == "extras"
        assert current is False
        assert schema.tag_index["square"][2] is True

    def test_inherited_class_tags(self):
        """Inheritable class tags pass to subclasses."""
        @dataclass
        class Base(Serializable, ignorable_names=("old",), name="base"):
            pass

        @dataclass
        class Derived(Base):
            pass

        assert get_class_tags(Derived) == {"ignorable_names": ("old",)}
        assert SchemaRegistry.get(Derived).tag == "Derived"
        assert SchemaRegistry.get(Derived).is_ignorable("old")


class TestSubclassRegistry:
    """Test polymorphic registries."""

    def test_declared_subclasses(self):
        """Registry maps tags to declared subclasses."""
        registry = SchemaRegistry.registry_for(Shape)

        assert registry.is_polymorphic
        assert registry.class_for("Circle") is Circle
        assert registry.class_for("square") is Square
        assert registry.class_for("box") is Square
        assert registry.tag_for(Square()) == "square"

    def test_registry_declared_on_ancestor(self):
        """Registry is found on an ancestor."""
        registry = SchemaRegistry.registry_for(Dog)

        assert set(registry.by_type) == {Dog, Puppy}
        assert registry.class_for("Cat") is None

    def test_abstract_classes_are_excluded(self):
        """Abstract classes are left out of the registry."""
        registry = SchemaRegistry.registry_for(Expr)

        assert dict(registry.by_type) == {Const: "Const"}

    def test_registry_is_cached(self):
        """Registry is built once per type."""
        assert SchemaRegistry.registry_for(Shape) is SchemaRegistry.registry_for(Shape)

    def test_non_subclass_entry_rejected(self):
        """Registry entries must be subclasses."""
        class Bad(Serializable, subclasses=(Point,)):
            pass

        with pytest.raises(SchemaError, match="not a subclass"):
            MetadataExtractor().build_registry(Bad)

    def test_duplicate_tags_rejected(self):
        """Two classes cannot share a tag."""
        @dataclass
        class Root(Serializable, subclasses=(lambda: (One, Two),)):
            pass

        @dataclass
        class One(Root, name="same"):
            pass

        @dataclass
        class Two(Root, name="same"):
            pass

        with pytest.raises(SchemaError, match="already used"):
            MetadataExtractor().build_registry(Root)


class TestSchemaRegistry:
    """Test the process-wide cache."""

    def test_get_is_cached(self):
        """Second get() returns the same schema."""
        first = SchemaRegistry.get(Point)

        assert SchemaRegistry.get(Point) is first
        assert SchemaRegistry.is_registered(Point)
        assert Point in SchemaRegistry.get_all()

    def test_clear(self):
        """clear() forgets schemas."""
        SchemaRegistry.get(Point)
        SchemaRegistry.clear()

        assert not SchemaRegistry.is_registered(Point)

    def test_register_callback_fires_once(self):
        """Callback runs on first build only."""
        seen = []
        callback = lambda cls, schema: seen.append(cls)
        SchemaRegistry.add_register_callback(callback)
        try:
            SchemaRegistry.get(Point)
            SchemaRegistry.get(Point)
        finally:
            SchemaRegistry.remove_register_callback(callback)

        assert seen == [Point]

    def test_concurrent_first_calls_publish_one_schema(self):
        """Threads racing on the first get() all receive the published schema."""
        workers = 8
        barrier = threading.Barrier(workers)
        seen = []
        callback = lambda cls, schema: seen.append(cls)

        def get_schema():
            barrier.wait()
            return SchemaRegistry.get(Drawing)

        SchemaRegistry.add_register_callback(callback)
        try:
            with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
                futures = [executor.submit(get_schema) for _ in range(workers)]
                results = [f.result() for f in concurrent.futures.as_completed(futures)]
        finally:
            SchemaRegistry.remove_register_callback(callback)

        assert len(results) == workers
        assert all(schema is SchemaRegistry.get(Drawing) for schema in results)
        assert seen == [Drawing]

    def test_extraction_is_deterministic(self):
        """Extracting twice gives equal descriptors."""
        first = MetadataExtractor().extract(Drawing)
        second = MetadataExtractor().extract(Drawing)

        assert first.fields == second.fields
        assert first.providers == second.providers


class TestConstructor:
    """Test canonical constructor discovery."""

    def test_marked_constructor(self):
        """Marked constructor defines the fields."""
        schema = SchemaRegistry.get(Money)

        assert [fd.name for fd in schema.constructor_fields] == ["amount", "currency"]
        assert schema.field_by_name["amount"].element_type is Decimal
        assert schema.constructor(Decimal("1.25")) == Money(125)

    def test_plain_init(self):
        """Plain __init__ parameters become fields."""
        @xs(name="legacy")
        class Legacy:
            def __init__(self, a: int, b: str = "x"):
                self.a = a
                self.b = b

        schema = SchemaRegistry.get(Legacy)
        assert schema.tag == "legacy"
        assert [fd.name for fd in schema.constructor_fields] == ["a", "b"]
        assert schema.field_by_name["b"].python_default == "x"

    def test_two_constructors_rejected(self):
        """Only one constructor may be marked."""
        @dataclass
        class Twice(Serializable):
            a: int = 0

            @constructor
            @classmethod
            def one(cls, a: int):
                return cls(a)

            @constructor
            @classmethod
            def two(cls, a: int):
                return cls(a)

        with pytest.raises(SchemaError, match="more than one canonical constructor"):
            SchemaRegistry.get(Twice)

    def test_missing_annotation_rejected(self):
        """Constructor parameters need annotations."""
        @xs()
        class Untyped:
            def __init__(self, a, b: int = 0):
                self.a = a

        with pytest.raises(SchemaError, match="no type annotation"):
            SchemaRegistry.get(Untyped)

    def test_var_args_rejected(self):
        """Constructor cannot take *args."""
        @xs()
        class Variadic:
            def __init__(self, *items: int):
                self.items = items

        with pytest.raises(SchemaError):
            SchemaRegistry.get(Variadic)


class TestSchemaErrors:
    """Test that inconsistent metadata fails at first use."""

    def test_name_on_polymorphic_field(self):
        """Polymorphic field cannot be renamed."""
        @dataclass
        class Holder(Serializable):
            shape: Optional[Shape] = xs_field(name="thing", default=None)

        with pytest.raises(SchemaError, match="polymorphic"):
            SchemaRegistry.get(Holder)

    def test_name_on_single_variant_field(self):
        """Single-class field may be renamed."""
        @dataclass
        class Holder(Serializable):
            start: Optional[Point] = xs_field(name="start", default=None)

        assert SchemaRegistry.get(Holder).field_by_name["start"].tag_name == "start"

    def test_structured_attribute(self):
        """Structured fields cannot be attributes."""
        @dataclass
        class Holder(Serializable):
            p: Point = xs_field(as_attribute=True, default_factory=Point)

        with pytest.raises(SchemaError, match="cannot be an attribute"):
            SchemaRegistry.get(Holder)

    def test_block_tag_collision(self):
        """Two blocks cannot share a tag."""
        @dataclass
        class Holder(Serializable):
            a: Optional[Point] = None
            b: Optional[Point] = None

        with pytest.raises(SchemaError, match="tag 'Point'"):
            SchemaRegistry.get(Holder)

    def test_attribute_name_collision(self):
        """Two attributes cannot share a name."""
        @dataclass
        class Holder(Serializable):
            a: int = xs_field(name="z", default=0)
            b: int = xs_field(name="z", default=0)

        with pytest.raises(SchemaError, match="attribute name 'z'"):
            SchemaRegistry.get(Holder)

    def test_obsolete_name_collision(self):
        """Obsolete names cannot clash with current ones."""
        @dataclass
        class Holder(Serializable):
            a: int = 0
            b: int = xs_field(obsolete_names=("a",), default=0)

        with pytest.raises(SchemaError):
            SchemaRegistry.get(Holder)

    def test_unsupported_type(self):
        """Unsupported field types are rejected."""
        @dataclass
        class Holder(Serializable):
            data: dict = field(default_factory=dict)

        with pytest.raises(SchemaError, match="unsupported type"):
            SchemaRegistry.get(Holder)

    def test_invalid_default_value(self):
        """default_value must parse."""
        @dataclass
        class Holder(Serializable):
            n: int = xs_field(default_value="abc", default=0)

        with pytest.raises(SchemaError, match="invalid default_value"):
            SchemaRegistry.get(Holder)

    def test_polymorphic_without_registry(self):
        """polymorphic=True needs a subclass registry."""
        @dataclass
        class Holder(Serializable):
            p: Optional[Point] = xs_field(polymorphic=True, default=None)

        with pytest.raises(SchemaError, match="no subclass registry"):
            SchemaRegistry.get(Holder)

    def test_duplicate_controller(self):
        """One controller per field and kind."""
        @dataclass
        class Holder(Serializable):
            a: int = 0

            @enabled_controller("a")
            def first(self):
                return True

            @enabled_controller("a")
            def second(self):
                return False

        with pytest.raises(SchemaError, match="two enabled controllers"):
            SchemaRegistry.get(Holder)

    def test_controller_for_unknown_field(self):
        """Controllers must name a field."""
        @dataclass
        class Holder(Serializable):
            a: int = 0

            @error_check("missing")
            def check(self):
                return None

        with pytest.raises(SchemaError, match="unknown field 'missing'"):
            SchemaRegistry.get(Holder)

    def test_unknown_affected_field(self):
        """affected_fields must name fields."""
        @dataclass
        class Holder(Serializable):
            a: int = 0

            @provider(affected_fields=("b",))
            def value(self) -> int:
                return self.a

        with pytest.raises(SchemaError, match="unknown affected fields"):
            SchemaRegistry.get(Holder)

    def test_failed_schema_is_not_cached(self):
        """Failed builds raise again on next get()."""
        @dataclass
        class Holder(Serializable):
            data: dict = field(default_factory=dict)

        for _ in range(2):
            with pytest.raises(SchemaError):
                SchemaRegistry.get(Holder)
        assert not SchemaRegistry.is_registered(Holder)


@dataclass(frozen=True)
class Unit:
    name: str


@dataclass(frozen=True)
class Scale:
    factor: int


@dataclass
class Measured(Serializable):
    size: int = 0
    unit: Optional[Unit] = xs_field(default=None, provides=True, as_block=False)

    @provider(affected_fields=("size",))
    def scale(self, unit: Unit) -> Scale:
        return Scale(self.size)

    @propagate_to_children
    def child_unit(self) -> Unit:
        return Unit("child")

    @error_check("size")
    def size_positive(self):
        return None


class TestProviderDiscovery:
    """Test how providers become ProviderDescriptors."""

    def test_field_providers_come_first(self):
        """Field providers precede method providers."""
        providers = SchemaRegistry.get(Measured).providers

        assert [p.name for p in providers] == ["unit", "scale", "child_unit", "size_positive"]
        assert providers[0].source_field == "unit"
        assert providers[0].affected_fields == frozenset({"unit"})

    def test_inputs_and_result_type(self):
        """Inputs and result type come from annotations."""
        scale = SchemaRegistry.get(Measured).provider("scale")

        assert scale.inputs == (("unit", Unit, False),)
        assert scale.result_type is Scale
        assert scale.unwrap is False
        assert scale.affected_fields == frozenset({"size"})

    def test_propagate_only(self):
        """Propagate-only providers are not local."""
        child_unit = SchemaRegistry.get(Measured).provider("child_unit")

        assert child_unit.local is False
        assert child_unit.propagates_to_children is True
        assert child_unit.affected_fields is None

    def test_roles(self):
        """Decorators set the provider role."""
        schema = SchemaRegistry.get(Measured)

        assert schema.provider("size_positive").role is ProviderRole.ERROR_CHECK
        assert [p.name for p in schema.consumer_providers] == ["size_positive"]

    def test_container_result_unwraps(self):
        """List result types unwrap to the element."""
        @dataclass
        class Many(Serializable):
            @provider(affected_fields=())
            def units(self) -> List[Unit]:
                return [Unit("a"), Unit("b")]

        units = SchemaRegistry.get(Many).provider("units")
        assert units.unwrap is True
        assert units.result_type is Unit

    def test_override_keeps_base_position(self):
        """Overrides keep the base class order."""
        @dataclass
        class Base(Serializable):
            @provider(affected_fields=())
            def first(self) -> Unit:
                return Unit("base")

            @provider(affected_fields=())
            def second(self) -> Scale:
                return Scale(1)

        @dataclass
        class Child(Base):
            @provider(affected_fields=())
            def third(self) -> int:
                return 3

            @provider(affected_fields=())
            def first(self) -> Unit:
                return Unit("child")

        schema = SchemaRegistry.get(Child)
        assert [p.name for p in schema.providers] == ["first", "second", "third"]
        assert schema.provider("first").function is Child.__dict__["first"]
