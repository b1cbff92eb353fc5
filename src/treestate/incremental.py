"""
Incremental re-evaluation after an edit.

An edit produces a new immutable object. Re-evaluating it runs the normal
fixpoint, but each provider that becomes ready may take its previous output
instead of running again. A previous output is reused only when ALL hold:

  1. the provider was READY in the previous evaluation
  2. it declares affected_fields, and none of them changed
     (an empty declaration never intersects, so such providers depend on
     their injected arguments alone)
  3. none of its inputs came from a provider recomputed in this cycle
  4. every input value equals the previous input value

Providers with undeclared affected_fields always run again.

Trust boundary: a provider declaring affected_fields=() that reads instance
fields anyway will return stale results. Nothing here can detect that.
"""

import logging
from typing import Any, FrozenSet, Iterable, Optional, Tuple

from treestate.resolver import (
    AvailableValue, DependencyGraphResolver, ProviderState, ResolvedDependencies,
    ResolvedNode, as_available,
)
from treestate.schema import ProviderDescriptor
from treestate.schema_registry import SchemaRegistry

logger = logging.getLogger(__name__)


def _same(a: Any, b: Any) -> bool:
    return a is b or a == b


def diff_fields(old: Any, new: Any) -> FrozenSet[str]:
    """
    Names of constructor fields whose values differ between old and new.

    Objects of different classes differ in every field of new.
    """
    schema = SchemaRegistry.get(type(new))
    if type(old) is not type(new):
        return frozenset(fd.name for fd in schema.constructor_fields)
    return frozenset(
        fd.name for fd in schema.constructor_fields
        if not _same(getattr(old, fd.name, None), getattr(new, fd.name, None))
    )


class IncrementalEvaluator(DependencyGraphResolver):
    """DependencyGraphResolver that reuses unaffected results of a previous run."""

    def reevaluate(
        self,
        previous: Optional[ResolvedDependencies],
        new_obj: Any,
        changed_fields: Optional[Iterable[str]] = None,
        seeds: Iterable[Any] = (),
        inherited: Iterable[Any] = (),
    ) -> ResolvedDependencies:
        """
        Resolve new_obj, reusing what is still valid from previous.

        Args:
            previous: Earlier resolution of an object of the same class, or None
            new_obj: The edited object
            changed_fields: Fields known to differ; computed with diff_fields()
                when omitted

        Raises:
            DependencyResolutionError: as DependencyGraphResolver.resolve()
        """
        schema = SchemaRegistry.get(type(new_obj))
        if previous is not None and previous.schema is not schema:
            previous = None

        state = ResolvedDependencies(new_obj, schema, seeds, inherited)
        if previous is not None:
            state.previous = previous
            state.changed_fields = frozenset(
                changed_fields if changed_fields is not None else diff_fields(previous.obj, new_obj)
            )
        self._fixpoint(state)

        logger.debug(
            f"{schema.cls.__qualname__}: reused {state.reused}, recomputed {state.recomputed} "
            f"(changed {sorted(state.changed_fields)})"
        )
        # Only the edit cycle that produced this state needs the previous one
        state.previous = None
        return state

    def _compute(
        self,
        state: ResolvedDependencies,
        p: ProviderDescriptor,
        args: Tuple[Any, ...],
        sources: Tuple[Optional[str], ...],
    ) -> Any:
        if self._can_reuse(state, p, args, sources):
            state.inputs[p.name] = args
            state.input_sources[p.name] = sources
            state.reused.append(p.name)
            return state.previous.outputs[p.name]
        return super()._compute(state, p, args, sources)

    @staticmethod
    def _can_reuse(
        state: ResolvedDependencies,
        p: ProviderDescriptor,
        args: Tuple[Any, ...],
        sources: Tuple[Optional[str], ...],
    ) -> bool:
        previous = state.previous
        if previous is None or previous.states.get(p.name) is not ProviderState.READY:
            return False
        if p.affected_fields is None or p.affected_fields & state.changed_fields:
            return False
        if any(source in state.recomputed for source in sources if source is not None):
            return False
        previous_args = previous.inputs.get(p.name)
        if previous_args is None or len(previous_args) != len(args):
            return False
        return all(_same(a, b) for a, b in zip(args, previous_args))

    # ------------------------------------------------------------------ tree

    def reevaluate_tree(
        self,
        previous: Optional[ResolvedNode],
        new_root: Any,
        seeds: Iterable[Any] = (),
    ) -> ResolvedNode:
        """
        Re-evaluate a whole tree after an edit.

        Children are paired with the previous tree by field path and class;
        unpaired children are resolved from scratch.
        """
        return self._make_node(new_root, as_available(seeds), "", None, previous)

    def _resolve_one(
        self,
        obj: Any,
        inherited: Tuple[AvailableValue, ...],
        previous: Optional[ResolvedNode],
    ) -> ResolvedDependencies:
        # READY outputs of a cancelled (superseded) state are still valid
        previous_state = previous.resolved if previous is not None and type(previous.obj) is type(obj) else None
        return self.reevaluate(previous_state, obj, inherited=inherited)
