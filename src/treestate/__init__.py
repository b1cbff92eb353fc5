"""
Metadata-driven tree codec and dependency resolution for dataclasses.

Classes declare their serialized form and their derived values with
metadata; treestate derives an immutable schema per class and drives
everything else from it.

Key Features:
- Encode/decode object graphs to an XML-like TreeNode tree
- Polymorphic fields via explicit subclass registries
- Dependency injection between provider methods, propagated to children
- Incremental re-evaluation that reuses unaffected provider results
- Validation findings, enabled/visibility controllers and pending values

Quick Start:
    >>> from dataclasses import dataclass
    >>> from treestate import Serializable, xs_field, provider, encode, decode
    >>>
    >>> @dataclass
    ... class Shape(Serializable, subclasses=(lambda: Circle,)):
    ...     label: str = ""
    >>>
    >>> @dataclass
    ... class Circle(Shape):
    ...     radius: float = 1.0
    >>>
    >>> node = encode(Circle(label="c", radius=2.0))
    >>> decode(node, Shape)
    Circle(label='c', radius=2.0)

Modules:
    - tags: class and field metadata (Serializable, xs, xs_field, constructor)
    - providers: provider, error check and controller decorators
    - schema / extractor / schema_registry: per-class schema, built once
    - codec: encode/decode against TreeNode
    - resolver: dependency resolution, pending values, tree resolution
    - incremental: reuse of previous provider results after an edit
    - validation: severities, findings, built-in field checks
    - edit_session: generation-tracked root with snapshot history
    - config: process-wide codec configuration
"""

# Metadata
from treestate.tags import (
    Serializable,
    Text,
    FieldTags,
    constructor,
    xs,
    xs_field,
    xs_tags,
    get_class_tags,
)
from treestate.providers import (
    ProviderRole,
    provider,
    propagate_to_children,
    only_affected_by,
    error_check,
    enabled_controller,
    visibility_controller,
)

# Schema
from treestate.schema import (
    Arity,
    ClassSchema,
    FieldDescriptor,
    ProviderDescriptor,
    SerializationMode,
    SubclassRegistry,
)
from treestate.extractor import MetadataExtractor
from treestate.schema_registry import SchemaRegistry

# Codec
from treestate.tree import TreeNode
from treestate.codec import Codec, encode, decode
from treestate.config import (
    CodecConfig,
    UnknownContentPolicy,
    set_codec_config,
    get_codec_config,
    reset_codec_config,
)

# Resolution
from treestate.resolver import (
    AvailableValue,
    DependencyGraphResolver,
    ProviderState,
    ResolvedDependencies,
    ResolvedNode,
)
from treestate.incremental import IncrementalEvaluator, diff_fields

# Validation
from treestate.validation import (
    Severity,
    ValidationResult,
    worst_severity,
    validate,
    validate_tree,
    ErrorIfBlank,
    ErrorIfEmptyCollection,
    ErrorIfNegative,
    ErrorIfNotNumber,
    ErrorIfNotRegex,
    ErrorIfNotUniqueInObject,
    ErrorIfNotUniqueInParent,
)

# Lifecycle
from treestate.edit_session import EditSession
from treestate.snapshot_model import Snapshot

# Errors
from treestate.errors import (
    TreeStateError,
    SchemaError,
    DecodeError,
    EncodeError,
    DependencyResolutionError,
    DecodeWarning,
)

__all__ = [
    # Metadata
    'Serializable',
    'Text',
    'FieldTags',
    'constructor',
    'xs',
    'xs_field',
    'xs_tags',
    'get_class_tags',
    'ProviderRole',
    'provider',
    'propagate_to_children',
    'only_affected_by',
    'error_check',
    'enabled_controller',
    'visibility_controller',
    # Schema
    'Arity',
    'ClassSchema',
    'FieldDescriptor',
    'ProviderDescriptor',
    'SerializationMode',
    'SubclassRegistry',
    'MetadataExtractor',
    'SchemaRegistry',
    # Codec
    'TreeNode',
    'Codec',
    'encode',
    'decode',
    'CodecConfig',
    'UnknownContentPolicy',
    'set_codec_config',
    'get_codec_config',
    'reset_codec_config',
    # Resolution
    'AvailableValue',
    'DependencyGraphResolver',
    'ProviderState',
    'ResolvedDependencies',
    'ResolvedNode',
    'IncrementalEvaluator',
    'diff_fields',
    # Validation
    'Severity',
    'ValidationResult',
    'worst_severity',
    'validate',
    'validate_tree',
    'ErrorIfBlank',
    'ErrorIfEmptyCollection',
    'ErrorIfNegative',
    'ErrorIfNotNumber',
    'ErrorIfNotRegex',
    'ErrorIfNotUniqueInObject',
    'ErrorIfNotUniqueInParent',
    # Lifecycle
    'EditSession',
    'Snapshot',
    # Errors
    'TreeStateError',
    'SchemaError',
    'DecodeError',
    'EncodeError',
    'DependencyResolutionError',
    'DecodeWarning',
]

__version__ = '1.0.0'
__description__ = 'Metadata-driven tree codec and dependency resolution for dataclasses'
