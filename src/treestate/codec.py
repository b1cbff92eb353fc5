"""
Schema-driven conversion between objects and TreeNode trees.

Encoding walks ClassSchema.fields in order. Decoding scans a node's
attributes and children once, assigns each to a field through the schema's
lookup tables, then calls the canonical constructor.

Wire conventions:
    attribute collections   a;b;c        (escaped, see treestate.scalars)
    null collection element <null-NAME/>
    inner list              <list-NAME>...</list-NAME>
    explicit empty          <empty-NAME/>, the empty wrapper, or attr=""
    absent collection       empty collection
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from treestate.config import CodecConfig, UnknownContentPolicy, resolve_config
from treestate.errors import DecodeError, DecodeWarning, EncodeError, SchemaError
from treestate.scalars import format_scalar, join_escaped, parse_scalar, split_escaped
from treestate.schema import Arity, ClassSchema, FieldDescriptor, NO_DEFAULT, TagRole
from treestate.schema_registry import SchemaRegistry
from treestate.tags import is_structured
from treestate.tree import TreeNode

logger = logging.getLogger(__name__)


class Codec:
    """
    Encoder/decoder bound to one CodecConfig.

    Args:
        config: Codec behaviour; defaults to the process-wide configuration

    Attributes:
        warnings: DecodeWarning records of the most recent decode() call
    """

    def __init__(self, config: Optional[CodecConfig] = None):
        self.config = resolve_config(config)
        self.warnings: List[DecodeWarning] = []

    # =========================================================================
    # ENCODE
    # =========================================================================

    def encode(self, obj: Any) -> TreeNode:
        """
        Encode an object graph.

        Raises:
            SchemaError: if the class of obj (or of a nested value) is invalid
            EncodeError: if a value has no tree representation
        """
        schema = SchemaRegistry.get(type(obj))
        return self._encode_object(obj, schema, schema.tag, schema.tag)

    def _encode_object(self, obj: Any, schema: ClassSchema, tag: str, path: str) -> TreeNode:
        node = TreeNode(tag)
        for fd in schema.fields:
            if not hasattr(obj, fd.name):
                raise SchemaError(schema.cls, f"constructor parameter '{fd.name}' has no readable attribute")
            value = getattr(obj, fd.name)
            if fd.is_attribute:
                self._encode_attribute(node, fd, value, path)
            else:
                self._encode_block(node, fd, value, f"{path}/{fd.name}")
        return node

    def _keep_empty(self, fd: FieldDescriptor) -> bool:
        # A declared default would otherwise replace an empty collection on decode
        return fd.include_empty or self.config.keep_empty_collections or fd.default_value is not None

    def _encode_attribute(self, node: TreeNode, fd: FieldDescriptor, value: Any, path: str) -> None:
        if not fd.arity.is_collection:
            if value is not None:
                node.attributes[fd.external_name] = format_scalar(value, fd.element_type)
            return

        if not value:
            if self._keep_empty(fd):
                node.attributes[fd.external_name] = ''
            return
        items = []
        for item in value:
            if item is None:
                raise EncodeError(f"{path}: attribute list '{fd.external_name}' cannot hold None")
            items.append(format_scalar(item, fd.element_type))
        if items == ['']:
            # Joins to "", which reads back as an empty list
            raise EncodeError(f"{path}: attribute list '{fd.external_name}' cannot hold a single empty string")
        node.attributes[fd.external_name] = join_escaped(items)

    def _encode_block(self, node: TreeNode, fd: FieldDescriptor, value: Any, path: str) -> None:
        if not fd.arity.is_collection:
            if value is None:
                return
            element = self._encode_element(fd, value, path)
            if fd.wrapper_tag is not None:
                element = TreeNode(fd.wrapper_tag, children=[element])
            node.children.append(element)
            return

        if not value:
            if self._keep_empty(fd):
                node.children.append(TreeNode(fd.wrapper_tag or fd.empty_tag))
            return

        target = node
        if fd.wrapper_tag is not None:
            target = TreeNode(fd.wrapper_tag)
            node.children.append(target)

        for index, item in enumerate(value):
            item_path = f"{path}[{index}]"
            if fd.arity is not Arity.REPEATED_OF_REPEATED:
                target.children.append(self._encode_element(fd, item, item_path))
            elif item is None:
                target.children.append(TreeNode(fd.null_tag))
            else:
                inner = TreeNode(fd.list_tag)
                for inner_index, inner_item in enumerate(item):
                    inner.children.append(self._encode_element(fd, inner_item, f"{item_path}[{inner_index}]"))
                target.children.append(inner)

    def _encode_element(self, fd: FieldDescriptor, value: Any, path: str) -> TreeNode:
        if value is None:
            return TreeNode(fd.null_tag)
        if fd.is_scalar:
            return TreeNode(fd.inner_tag or fd.tag_name, text=format_scalar(value, fd.element_type))

        tag = fd.registry.tag_for(value)
        if tag is None:
            raise EncodeError(
                f"{path}: {type(value).__qualname__} is not a registered variant of "
                f"{getattr(fd.element_type, '__qualname__', fd.element_type)}"
            )
        schema = SchemaRegistry.get(type(value))
        return self._encode_object(value, schema, fd.tag_name or tag, path)

    # =========================================================================
    # DECODE
    # =========================================================================

    def decode(self, node: TreeNode, cls: type) -> Any:
        """
        Decode a tree into an instance of cls (or of one of its registered subclasses).

        Raises:
            DecodeError: if the tree does not match the schema
            SchemaError: if a class involved is invalid
        """
        self.warnings = []
        if not is_structured(cls):
            raise SchemaError(cls, "not a serializable class")
        klass = SchemaRegistry.registry_for(cls).class_for(node.tag)
        if klass is None:
            raise DecodeError(f"unknown root tag '{node.tag}' for {cls.__qualname__}", node.tag)
        return self._decode_object(node, klass, node.tag)

    def _decode_object(self, node: TreeNode, klass: type, path: str) -> Any:
        schema = SchemaRegistry.get(klass)
        values: Dict[str, Any] = {}
        attribute_currency: Dict[str, bool] = {}
        # field name -> {is_current: [(role, node), ...]}
        blocks: Dict[str, Dict[bool, List[Tuple[TagRole, TreeNode]]]] = {}

        for name, text in node.attributes.items():
            entry = schema.attribute_index.get(name)
            if entry is None:
                self._unknown(schema, path, name, 'attribute')
                continue
            fd, current = entry
            if fd.name in attribute_currency:
                if attribute_currency[fd.name] and not current:
                    continue
                if attribute_currency[fd.name] == current:
                    raise DecodeError(f"more than one value for '{fd.name}'", path)
            attribute_currency[fd.name] = current
            values[fd.name] = self._decode_attribute(fd, text, f"{path}@{name}")

        for child in node.children:
            entry = schema.tag_index.get(child.tag)
            if entry is None:
                self._unknown(schema, path, child.tag, 'element')
                continue
            fd, role, current = entry
            if role is TagRole.ELEMENT and fd.tag_name is None:
                # Obsolete class tags belong to the registry, not to the field
                current = True
            blocks.setdefault(fd.name, {True: [], False: []})[current].append((role, child))

        for name, groups in blocks.items():
            fd = schema.field_by_name[name]
            entries = groups[True] or groups[False]
            values[name] = self._decode_block_field(fd, entries, f"{path}/{name}")

        args = []
        kwargs = {}
        for fd in schema.constructor_fields:
            value = values[fd.name] if fd.name in values else self._absent_value(fd, path)
            if fd.name in schema.keyword_only:
                kwargs[fd.name] = value
            else:
                args.append(value)

        try:
            return schema.constructor(*args, **kwargs)
        except Exception as e:
            raise DecodeError(f"cannot construct {klass.__qualname__}: {e}", path) from e

    def _unknown(self, schema: ClassSchema, path: str, name: str, kind: str) -> None:
        if schema.is_ignorable(name):
            logger.debug(f"{path}: ignoring {kind} '{name}'")
            return
        policy = self.config.unknown_content
        if policy is UnknownContentPolicy.IGNORE:
            return
        if policy is UnknownContentPolicy.ERROR:
            raise DecodeError(f"unknown {kind} '{name}'", path)
        warning = DecodeWarning(path=path, name=name, kind=kind)
        self.warnings.append(warning)
        logger.warning(str(warning))

    def _absent_value(self, fd: FieldDescriptor, path: str) -> Any:
        if fd.default_value is not None:
            return self._decode_attribute(fd, fd.default_value, f"{path}/{fd.name}")
        if fd.arity.is_collection:
            return fd.container()
        if fd.python_default_factory is not None:
            return fd.python_default_factory()
        if fd.python_default is not NO_DEFAULT:
            return fd.python_default
        if fd.arity is Arity.OPTIONAL:
            return None
        raise DecodeError(f"required field '{fd.external_name}' is missing", path)

    def _decode_attribute(self, fd: FieldDescriptor, text: str, path: str) -> Any:
        if fd.arity.is_collection:
            return fd.container(parse_scalar(item, fd.element_type, path) for item in split_escaped(text))
        return parse_scalar(text, fd.element_type, path)

    def _decode_block_field(self, fd: FieldDescriptor, entries: List[Tuple[TagRole, TreeNode]], path: str) -> Any:
        if not fd.arity.is_collection:
            if len(entries) > 1:
                raise DecodeError(f"more than one value for '{fd.name}'", path)
            role, child = entries[0]
            if role is TagRole.NULL:
                return None
            if role is TagRole.WRAPPER:
                if len(child.children) > 1:
                    raise DecodeError(f"wrapper '{child.tag}' holds more than one value", path)
                return self._decode_element(fd, child.children[0], path) if child.children else None
            if role is TagRole.ELEMENT:
                return self._decode_element(fd, child, path)
            raise DecodeError(f"'{child.tag}' is not valid for a single value", path)

        items: List[Any] = []
        for role, child in entries:
            if role is TagRole.EMPTY:
                continue
            if role is TagRole.WRAPPER:
                for inner in child.children:
                    items.append(self._decode_item(fd, inner, f"{path}[{len(items)}]"))
            else:
                items.append(self._decode_item(fd, child, f"{path}[{len(items)}]"))
        return fd.container(items)

    def _decode_item(self, fd: FieldDescriptor, child: TreeNode, path: str) -> Any:
        """One element of a collection field."""
        if child.tag == fd.null_tag:
            return None
        if fd.arity is not Arity.REPEATED_OF_REPEATED:
            return self._decode_element(fd, child, path)
        if child.tag != fd.list_tag:
            raise DecodeError(f"expected '{fd.list_tag}', found '{child.tag}'", path)
        container = fd.inner_container or list
        return container(
            self._decode_element(fd, inner, f"{path}[{index}]")
            for index, inner in enumerate(child.children)
        )

    def _decode_element(self, fd: FieldDescriptor, child: TreeNode, path: str) -> Any:
        if child.tag == fd.null_tag:
            return None
        if fd.is_scalar:
            expected = fd.inner_tag or fd.tag_name
            if child.tag != expected and child.tag not in fd.obsolete_names:
                raise DecodeError(f"expected '{expected}', found '{child.tag}'", path)
            return parse_scalar(child.text or '', fd.element_type, path)

        if fd.tag_name is not None:
            klass = next(iter(fd.registry.by_type))
        else:
            klass = fd.registry.class_for(child.tag)
            if klass is None:
                raise DecodeError(f"'{child.tag}' is not a registered variant for '{fd.name}'", path)
        return self._decode_object(child, klass, path)


def encode(obj: Any, config: Optional[CodecConfig] = None) -> TreeNode:
    """Encode obj with a one-off Codec."""
    return Codec(config).encode(obj)


def decode(node: TreeNode, cls: type, config: Optional[CodecConfig] = None) -> Any:
    """Decode node into cls with a one-off Codec."""
    return Codec(config).decode(node, cls)
