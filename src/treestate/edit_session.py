"""
EditSession: the current root object of an editor and its resolved state.

Objects are immutable; every edit produces a new root. The session
re-evaluates the new root incrementally against the previous resolved tree,
bumps its generation counter, cancels pending values of the superseded
generation and records a Snapshot of the encoded tree.

    session = EditSession(document, seeds=[catalog])
    session.replace_root(replace(document, title="New"), label="edit title")
    session.undo()
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from treestate.codec import Codec
from treestate.incremental import IncrementalEvaluator
from treestate.resolver import ResolvedNode
from treestate.snapshot_model import Snapshot
from treestate.validation import ValidationResult, validate_tree

logger = logging.getLogger(__name__)


class EditSession:
    """
    Holds the live root, its ResolvedNode tree and the snapshot history.

    Args:
        root: Initial root object
        seeds: Values available to every node of the tree
        codec: Codec used for snapshots (default: process-wide configuration)
        evaluator: Evaluator used for (re-)resolution

    Thread safety: Not thread-safe (all operations expected on one thread).
    """

    def __init__(
        self,
        root: Any,
        seeds: Iterable[Any] = (),
        codec: Optional[Codec] = None,
        evaluator: Optional[IncrementalEvaluator] = None,
    ):
        self._root_class = type(root)
        self._seeds: Tuple[Any, ...] = tuple(seeds)
        self._codec = codec or Codec()
        self._evaluator = evaluator or IncrementalEvaluator()
        self._generation = 0
        self._history: List[Snapshot] = []
        self._cursor = -1
        self._node = self._evaluator.resolve_tree(root, self._seeds)
        self._record("init")

    # ------------------------------------------------------------------ state

    @property
    def root(self) -> Any:
        return self._node.obj

    @property
    def node(self) -> ResolvedNode:
        return self._node

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def history(self) -> Tuple[Snapshot, ...]:
        return tuple(self._history)

    @property
    def current_snapshot(self) -> Snapshot:
        return self._history[self._cursor]

    @property
    def is_complete(self) -> bool:
        return self._node.is_complete

    # ------------------------------------------------------------------ edits

    def replace_root(self, new_root: Any, label: str = "edit") -> ResolvedNode:
        """
        Install an edited root and record it in history.

        Raises:
            TypeError: if new_root is not an instance of the session's root class
            DependencyResolutionError: if the new tree cannot be resolved; the
                session keeps its previous root in that case
        """
        if not isinstance(new_root, self._root_class):
            raise TypeError(
                f"root must be a {self._root_class.__qualname__}, got {type(new_root).__qualname__}"
            )
        node = self._install(new_root)
        self._record(label)
        return node

    def _install(self, new_root: Any) -> ResolvedNode:
        previous = self._node
        node = self._evaluator.reevaluate_tree(previous, new_root, self._seeds)
        previous.cancel()
        self._node = node
        self._generation += 1
        reused = sum(len(n.resolved.reused) for n in node.iter())
        recomputed = sum(len(n.resolved.recomputed) for n in node.iter())
        logger.debug(f"Generation {self._generation}: reused {reused}, recomputed {recomputed} provider(s)")
        return node

    def _record(self, label: str) -> None:
        # Recording after an undo discards the redo branch
        del self._history[self._cursor + 1:]
        parent_id = self._history[-1].id if self._history else None
        snapshot = Snapshot.create(label, self._codec.encode(self.root), self._generation, parent_id)
        self._history.append(snapshot)
        self._cursor = len(self._history) - 1
        logger.debug(f"Recorded snapshot '{label}' ({snapshot.id})")

    def undo(self) -> bool:
        """Restore the previous snapshot. Returns False at the start of history."""
        if self._cursor <= 0:
            return False
        return self._restore(self._cursor - 1)

    def redo(self) -> bool:
        """Re-apply the next snapshot. Returns False at the end of history."""
        if self._cursor >= len(self._history) - 1:
            return False
        return self._restore(self._cursor + 1)

    def _restore(self, index: int) -> bool:
        snapshot = self._history[index]
        root = self._codec.decode(snapshot.tree, self._root_class)
        self._install(root)
        self._cursor = index
        logger.debug(f"Restored snapshot '{snapshot.label}'")
        return True

    # ------------------------------------------------------------------ pending

    def resume(self, generation: Optional[int] = None) -> bool:
        """
        Harvest completed pending values of the current generation.

        Args:
            generation: Generation the caller's notification belongs to. A
                stale generation is ignored.

        Returns:
            True if the tree is completely resolved afterwards
        """
        if generation is not None and generation != self._generation:
            logger.debug(f"Ignoring resume for stale generation {generation} (current {self._generation})")
            return self._node.is_complete
        self._evaluator.resume_tree(self._node)
        return self._node.is_complete

    async def wait(self) -> ResolvedNode:
        """Await every pending value of the current generation."""
        generation = self._generation
        node = await self._evaluator.wait_tree(self._node)
        if generation != self._generation:
            logger.warning(f"Generation {generation} was superseded while waiting")
        return node

    # ------------------------------------------------------------------ findings

    def validate(self) -> Dict[str, List[ValidationResult]]:
        """Findings for every object of the current tree, keyed by path."""
        return validate_tree(self._node)
