"""
Dependency resolution for provider methods.

Each object carries providers: methods whose typed arguments are filled from a
pool of available values, and whose results (for DEPENDENCY providers) are
added back to that pool. Resolution is a fixpoint over the providers of one
object; values marked for propagation flow on to the object's children.

ALGORITHM (one object):
  1. Seed the pool with inherited values (from the parent) and caller seeds.
  2. Phase 1: pass over DEPENDENCY providers in declaration order, running
     every provider whose inputs are all available. Repeat until a pass makes
     no progress.
  3. Phase 2: run error checks and controllers whose inputs are available.
     Their results never enter the pool.
  4. If nothing is pending and a non-optional provider never ran, raise
     DependencyResolutionError.

Pending results:
  A provider returning a concurrent.futures.Future or asyncio.Future is
  PENDING. Pending values are not available to other providers. resolve()
  returns the partial state; resume() harvests completed futures and re-enters
  the fixpoint. A cancelled state ignores every later result.

Pool lookup:
  isinstance match, most recently added entry first. Local results therefore
  shadow inherited ones, and later providers shadow earlier ones.
"""

import asyncio
import concurrent.futures
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from treestate.errors import DependencyResolutionError
from treestate.providers import ProviderRole
from treestate.schema import Arity, ClassSchema, ProviderDescriptor
from treestate.schema_registry import SchemaRegistry
from treestate.validation import ValidationResult, normalize_findings

logger = logging.getLogger(__name__)

_FUTURE_TYPES = (concurrent.futures.Future, asyncio.Future)


class ProviderState(Enum):
    UNAVAILABLE = "unavailable"
    PENDING = "pending"
    READY = "ready"


@dataclass(frozen=True)
class AvailableValue:
    """A value in the injection pool and the provider that produced it (None for seeds)."""
    value: Any
    source: Optional[str] = None


def is_pending(value: Any) -> bool:
    return isinstance(value, _FUTURE_TYPES)


def as_available(values: Iterable[Any]) -> Tuple[AvailableValue, ...]:
    """Wrap plain seed values; AvailableValue entries are kept as they are."""
    return tuple(v if isinstance(v, AvailableValue) else AvailableValue(v) for v in values)


def iter_children(obj: Any, schema: ClassSchema) -> Iterator[Tuple[str, Any]]:
    """
    Structured values held by obj's block fields, with their field paths.

    Paths look like ``shape``, ``shapes[2]`` or ``grid[1][0]``; None values
    are skipped.
    """
    for fd in schema.fields:
        if fd.is_scalar:
            continue
        value = getattr(obj, fd.name, None)
        if value is None:
            continue
        if fd.arity is Arity.REPEATED_OF_REPEATED:
            for i, inner in enumerate(value):
                for j, item in enumerate(inner or ()):
                    if item is not None:
                        yield f"{fd.name}[{i}][{j}]", item
        elif fd.arity is Arity.REPEATED:
            for i, item in enumerate(value):
                if item is not None:
                    yield f"{fd.name}[{i}]", item
        else:
            yield fd.name, value


class ResolvedDependencies:
    """
    Outcome of resolving the providers of one object.

    Mutable while pending values are outstanding; complete once pending is
    empty. The incremental evaluator reads outputs and inputs of a previous
    instance to decide what to reuse.
    """

    def __init__(
        self,
        obj: Any,
        schema: ClassSchema,
        seeds: Iterable[Any] = (),
        inherited: Iterable[Any] = (),
    ):
        self.obj = obj
        self.schema = schema
        self.inherited: Tuple[AvailableValue, ...] = as_available(inherited)
        self.seeds: Tuple[AvailableValue, ...] = as_available(seeds)
        self.pool: List[AvailableValue] = list(self.inherited) + list(self.seeds)
        self.propagated: List[AvailableValue] = []

        self.states: Dict[str, ProviderState] = {p.name: ProviderState.UNAVAILABLE for p in schema.providers}
        self.outputs: Dict[str, Any] = {}
        self.inputs: Dict[str, Tuple[Any, ...]] = {}
        self.input_sources: Dict[str, Tuple[Optional[str], ...]] = {}
        self.pending: Dict[str, Any] = {}
        self.execution_order: List[str] = []

        self.controllers: Dict[Tuple[ProviderRole, str], bool] = {}
        self.validation: List[ValidationResult] = []

        self.reused: List[str] = []
        self.recomputed: List[str] = []
        self.cancelled = False

        # Set by IncrementalEvaluator
        self.previous: Optional['ResolvedDependencies'] = None
        self.changed_fields: frozenset = frozenset()

    def lookup(self, tp: type) -> Optional[AvailableValue]:
        for entry in reversed(self.pool):
            if isinstance(entry.value, tp):
                return entry
        return None

    def get(self, tp: type, default: Any = None) -> Any:
        """Most recent available value of type tp."""
        entry = self.lookup(tp)
        return entry.value if entry is not None else default

    def get_all(self, tp: type) -> List[Any]:
        """Every available value of type tp, oldest first."""
        return [entry.value for entry in self.pool if isinstance(entry.value, tp)]

    def child_seeds(self, child_schema: ClassSchema) -> Tuple[AvailableValue, ...]:
        """Values a child inherits: ours plus our propagated results, minus blocked types."""
        candidates = list(self.inherited) + self.propagated
        return tuple(entry for entry in candidates if not child_schema.blocks(entry.value))

    def is_enabled(self, field_name: str) -> bool:
        """
        Enabled state of a field. Fields without a controller are enabled; a
        controller without a result yet (pending or waiting on inputs) counts
        as disabled.
        """
        key = (ProviderRole.ENABLED, field_name)
        if key in self.controllers:
            return self.controllers[key]
        return not self._has_controller(ProviderRole.ENABLED, field_name)

    def is_visible(self, field_name: str) -> bool:
        """Visibility of a field; a controller without a result counts as visible."""
        return self.controllers.get((ProviderRole.VISIBLE, field_name), True)

    def _has_controller(self, role: ProviderRole, field_name: str) -> bool:
        return any(p.role is role and p.target_field == field_name for p in self.schema.providers)

    @property
    def is_complete(self) -> bool:
        return not self.pending and not self.cancelled

    def cancel(self) -> None:
        """Discard outstanding pending values; later resume() calls do nothing."""
        self.cancelled = True
        for future in self.pending.values():
            future.cancel()
        if self.pending:
            logger.debug(f"Cancelled {len(self.pending)} pending provider(s) of {self.schema.cls.__qualname__}")
        self.pending.clear()

    def __repr__(self) -> str:
        return (
            f"<ResolvedDependencies {self.schema.cls.__qualname__} "
            f"ready={len(self.outputs)} pending={sorted(self.pending)}>"
        )


@dataclass(eq=False)
class ResolvedNode:
    """Resolution state of one object in a tree, linked to its children."""
    obj: Any
    resolved: ResolvedDependencies
    field_path: str = ""
    parent: Optional['ResolvedNode'] = field(default=None, repr=False)
    children: List['ResolvedNode'] = field(default_factory=list, repr=False)
    expanded: bool = False
    previous: Optional['ResolvedNode'] = field(default=None, repr=False)

    @property
    def path(self) -> str:
        if self.parent is None:
            return self.resolved.schema.tag
        return f"{self.parent.path}/{self.field_path}"

    def iter(self) -> Iterator['ResolvedNode']:
        yield self
        for child in self.children:
            yield from child.iter()

    def find(self, obj: Any) -> Optional['ResolvedNode']:
        """Node holding exactly obj (identity), or None."""
        for node in self.iter():
            if node.obj is obj:
                return node
        return None

    def pending_futures(self) -> List[Any]:
        return [f for node in self.iter() for f in node.resolved.pending.values()]

    @property
    def is_complete(self) -> bool:
        return all(node.expanded and node.resolved.is_complete for node in self.iter())

    def cancel(self) -> None:
        for node in self.iter():
            node.resolved.cancel()


class DependencyGraphResolver:
    """
    Runs the providers of objects and object trees.

    Stateless apart from configuration; one instance can serve any number of
    objects.
    """

    # ------------------------------------------------------------------ object

    def resolve(self, obj: Any, seeds: Iterable[Any] = (), inherited: Iterable[Any] = ()) -> ResolvedDependencies:
        """
        Resolve the providers of obj.

        Args:
            obj: Instance of a serializable class
            seeds: Values available to obj only
            inherited: Values propagated from the parent; passed on to children

        Raises:
            DependencyResolutionError: if non-optional providers can never run
        """
        schema = SchemaRegistry.get(type(obj))
        state = ResolvedDependencies(obj, schema, seeds, inherited)
        self._fixpoint(state)
        return state

    def resume(self, state: ResolvedDependencies) -> ResolvedDependencies:
        """
        Harvest completed pending values and continue resolution.

        Futures that are not done yet stay pending. A future that failed
        stays pending too and re-raises its exception here, on this and every
        later resume, so the state never reports itself complete.
        """
        if state.cancelled:
            logger.debug(f"Ignoring resume of cancelled state for {state.schema.cls.__qualname__}")
            return state
        completed = [name for name, future in state.pending.items() if future.done()]
        if not completed:
            return state
        failure = None
        for name in completed:
            try:
                result = state.pending[name].result()
            except Exception as e:
                logger.warning(f"{state.schema.cls.__qualname__}: pending value of '{name}' failed: {e}")
                failure = failure or e
                continue
            del state.pending[name]
            self._complete(state, state.schema.provider(name), result)
        self._fixpoint(state)
        if failure is not None:
            raise failure
        return state

    async def resolve_async(
        self,
        obj: Any,
        seeds: Iterable[Any] = (),
        inherited: Iterable[Any] = (),
    ) -> ResolvedDependencies:
        """Resolve obj, awaiting pending values cooperatively until none remain."""
        state = self.resolve(obj, seeds, inherited)
        while state.pending and not state.cancelled:
            await _wait_first(state.pending.values())
            self.resume(state)
        return state

    def _fixpoint(self, state: ResolvedDependencies) -> None:
        schema = state.schema
        self._run_until_stable(state, schema.dependency_providers)
        self._run_until_stable(state, schema.consumer_providers)

        if state.pending:
            logger.debug(f"{schema.cls.__qualname__}: waiting on {sorted(state.pending)}")
            return

        stuck = {
            p.name: tuple(t for t in p.required_types if state.lookup(t) is None)
            for p in schema.providers
            if state.states[p.name] is ProviderState.UNAVAILABLE and not p.optional
        }
        if stuck:
            raise DependencyResolutionError(schema.cls, stuck)

        self._log(state, f"{schema.cls.__qualname__}: resolved {state.execution_order}")

    def _run_until_stable(self, state: ResolvedDependencies, providers: Tuple[ProviderDescriptor, ...]) -> None:
        while True:
            if self._run_pass(state, providers, settled=False):
                continue
            # Nothing more can run with full information. Release the first
            # provider whose optional inputs no runnable provider can produce.
            if not self._run_pass(state, providers, settled=True):
                return

    def _run_pass(
        self,
        state: ResolvedDependencies,
        providers: Tuple[ProviderDescriptor, ...],
        settled: bool,
    ) -> bool:
        """
        Run every provider whose inputs are ready; True if anything ran.

        With settled=True, at most one provider runs, and providers still
        UNAVAILABLE no longer hold back optional inputs.
        """
        progress = False
        for p in providers:
            if state.states[p.name] is not ProviderState.UNAVAILABLE:
                continue
            gathered = self._gather(state, p, settled)
            if gathered is None:
                continue
            args, sources = gathered
            result = self._compute(state, p, args, sources)
            if is_pending(result):
                state.states[p.name] = ProviderState.PENDING
                state.pending[p.name] = result
                self._log(state, f"{p.name} is pending")
                if settled:
                    return True
                continue
            self._complete(state, p, result)
            progress = True
            if settled:
                return True
        return progress

    def _gather(self, state: ResolvedDependencies, p: ProviderDescriptor, settled: bool = False):
        """(args, sources) if every input is ready, else None.

        A missing optional input is ready only once no provider that could
        still produce its type is waiting to run.
        """
        args = []
        sources = []
        for _, tp, optional in p.inputs:
            entry = state.lookup(tp)
            if entry is None:
                if not optional or self._may_produce(state, p, tp, settled):
                    return None
                args.append(None)
                sources.append(None)
            else:
                args.append(entry.value)
                sources.append(entry.source)
        return tuple(args), tuple(sources)

    @staticmethod
    def _may_produce(state: ResolvedDependencies, consumer: ProviderDescriptor, tp: type, settled: bool) -> bool:
        """True if a local provider other than consumer may still add a tp to the pool."""
        waiting = (ProviderState.PENDING,) if settled else (ProviderState.PENDING, ProviderState.UNAVAILABLE)
        for q in state.schema.dependency_providers:
            if q is consumer or not q.local or state.states[q.name] not in waiting:
                continue
            # Unannotated providers may return anything
            if q.result_type is None or issubclass(q.result_type, tp):
                return True
        return False

    def _compute(
        self,
        state: ResolvedDependencies,
        p: ProviderDescriptor,
        args: Tuple[Any, ...],
        sources: Tuple[Optional[str], ...],
    ) -> Any:
        state.inputs[p.name] = args
        state.input_sources[p.name] = sources
        state.recomputed.append(p.name)
        return p.invoke(state.obj, args)

    def _complete(self, state: ResolvedDependencies, p: ProviderDescriptor, result: Any) -> None:
        state.states[p.name] = ProviderState.READY
        state.outputs[p.name] = result
        state.execution_order.append(p.name)

        if p.role is ProviderRole.ERROR_CHECK:
            state.validation.extend(normalize_findings(result, p.target_field, p.name))
            return
        if p.role in (ProviderRole.ENABLED, ProviderRole.VISIBLE):
            state.controllers[(p.role, p.target_field)] = bool(result)
            return

        values = [AvailableValue(v, p.name) for v in _result_values(p, result) if v is not None]
        if p.local:
            state.pool.extend(values)
        if p.propagates_to_children:
            state.propagated.extend(values)
        self._log(state, f"{p.name} -> {[v.value for v in values]!r}")

    @staticmethod
    def _log(state: ResolvedDependencies, message: str) -> None:
        if state.schema.debug_dependencies:
            logger.info(message)
        else:
            logger.debug(message)

    # ------------------------------------------------------------------ tree

    def resolve_tree(self, root: Any, seeds: Iterable[Any] = ()) -> ResolvedNode:
        """
        Resolve root and every structured value below it.

        seeds reach every node (subject to block_injection). Children of an
        object with pending providers are resolved by resume_tree() once
        that object completes.
        """
        return self._make_node(root, as_available(seeds), "", None)

    def resume_tree(self, node: ResolvedNode) -> ResolvedNode:
        """Harvest completed pending values across the tree and expand completed nodes."""
        if node.resolved.cancelled:
            return node
        if node.resolved.pending:
            self.resume(node.resolved)
        if not node.expanded:
            if not node.resolved.pending:
                self._expand(node)
            return node
        for child in node.children:
            self.resume_tree(child)
        return node

    async def resolve_tree_async(self, root: Any, seeds: Iterable[Any] = ()) -> ResolvedNode:
        return await self.wait_tree(self.resolve_tree(root, seeds))

    async def wait_tree(self, node: ResolvedNode) -> ResolvedNode:
        """Await pending values anywhere in the tree until none remain."""
        futures = node.pending_futures()
        while futures:
            await _wait_first(futures)
            self.resume_tree(node)
            futures = node.pending_futures()
        return node

    def _resolve_one(
        self,
        obj: Any,
        inherited: Tuple[AvailableValue, ...],
        previous: Optional[ResolvedNode],
    ) -> ResolvedDependencies:
        return self.resolve(obj, inherited=inherited)

    def _make_node(
        self,
        obj: Any,
        inherited: Tuple[AvailableValue, ...],
        field_path: str,
        parent: Optional[ResolvedNode],
        previous: Optional[ResolvedNode] = None,
    ) -> ResolvedNode:
        state = self._resolve_one(obj, inherited, previous)
        node = ResolvedNode(obj=obj, resolved=state, field_path=field_path, parent=parent, previous=previous)
        if not state.pending:
            self._expand(node)
        return node

    def _expand(self, node: ResolvedNode) -> None:
        previous_children = {c.field_path: c for c in node.previous.children} if node.previous else {}
        for field_path, child in iter_children(node.obj, node.resolved.schema):
            child_schema = SchemaRegistry.get(type(child))
            previous = previous_children.get(field_path)
            if previous is not None and type(previous.obj) is not type(child):
                previous = None
            node.children.append(self._make_node(
                child, node.resolved.child_seeds(child_schema), field_path, node, previous,
            ))
        node.expanded = True
        node.previous = None


def _result_values(p: ProviderDescriptor, result: Any) -> List[Any]:
    if result is None:
        return []
    if p.unwrap or (p.result_type is None and isinstance(result, (list, tuple, set, frozenset))):
        return list(result)
    return [result]


async def _wait_first(futures: Iterable[Any]) -> None:
    waitables = [asyncio.wrap_future(f) for f in futures]
    await asyncio.wait(waitables, return_when=asyncio.FIRST_COMPLETED)
