"""
Process-wide codec configuration.

A single frozen CodecConfig is held at module level. Codec instances read it
when they are created unless an explicit config is passed in.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional


class UnknownContentPolicy(Enum):
    """What the decoder does with names that match no field."""
    IGNORE = "ignore"
    WARN = "warn"
    ERROR = "error"


@dataclass(frozen=True)
class CodecConfig:
    """
    Codec behaviour that is not tied to any one class.

    unknown_content applies to names a class has not declared ignorable.
    keep_empty_collections emits empty-collection markers for every
    collection field, as if each carried include_empty.
    """
    unknown_content: UnknownContentPolicy = UnknownContentPolicy.WARN
    keep_empty_collections: bool = False

    def with_changes(self, **changes) -> 'CodecConfig':
        return replace(self, **changes)


_DEFAULT_CONFIG = CodecConfig()
_codec_config: CodecConfig = _DEFAULT_CONFIG


def set_codec_config(config: CodecConfig) -> None:
    """
    Set the process-wide codec configuration.

    Args:
        config: The configuration new Codec instances will use
    """
    global _codec_config
    _codec_config = config


def get_codec_config() -> CodecConfig:
    """Get the process-wide codec configuration."""
    return _codec_config


def reset_codec_config() -> None:
    """Restore the default configuration. Used by tests."""
    set_codec_config(_DEFAULT_CONFIG)


def resolve_config(config: Optional[CodecConfig]) -> CodecConfig:
    return config if config is not None else _codec_config
