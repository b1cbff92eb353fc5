"""
Exception hierarchy for treestate.

Schema problems are fatal for a class and surface the first time the class is
used. Decode and encode problems fail a single codec call. Dependency problems
fail the resolution of a single object. Validation findings are never raised;
see treestate.validation.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple


class TreeStateError(Exception):
    """Base class for every error raised by treestate."""


class SchemaError(TreeStateError):
    """A class cannot be described by a ClassSchema."""

    def __init__(self, cls: Optional[type], message: str):
        self.cls = cls
        prefix = f"{cls.__qualname__}: " if cls is not None else ""
        super().__init__(f"{prefix}{message}")


class DecodeError(TreeStateError):
    """A tree node cannot be turned back into an object."""

    def __init__(self, message: str, path: str = ""):
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


class EncodeError(TreeStateError):
    """An object holds a value the tree representation cannot express."""


class DependencyResolutionError(TreeStateError):
    """
    Some providers could never become ready.

    Covers both genuine cycles and dependencies nobody supplies.

    Attributes:
        stuck: provider name -> tuple of input types that were missing
    """

    def __init__(self, owner: type, stuck: Dict[str, Tuple[type, ...]]):
        self.owner = owner
        self.stuck = dict(stuck)
        details = '; '.join(
            f"{name} needs {', '.join(t.__name__ for t in missing)}"
            for name, missing in self.stuck.items()
        )
        super().__init__(f"Unresolvable providers in {owner.__qualname__}: {details}")


@dataclass(frozen=True)
class DecodeWarning:
    """Record of content ignored while decoding (unknown tag or attribute)."""
    path: str
    name: str
    kind: str  # "attribute" or "element"

    def __str__(self) -> str:
        return f"{self.path}: unknown {self.kind} '{self.name}'"
