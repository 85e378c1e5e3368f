from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Tuple
from uuid import uuid4
import collections.abc, inspect, logging, threading, time

logger = logging.getLogger(__name__)

ERROR = "error"

# ====== Errors ======

class EngineError(Exception):
    """A malformed sync or a runaway cascade. Never a concept-level error.

    Errors raised while a flow runs carry that flow's ``cascade``.
    """
    cascade: Optional["Cascade"] = None

class SyncDefinitionError(EngineError):
    def __init__(self, sync: str, reason: str):
        super().__init__(f"sync {sync!r}: {reason}")
        self.sync = sync

class UnboundVariableError(EngineError):
    def __init__(self, var: "Var", sync: Optional[str] = None, action: Optional[str] = None):
        where = f" in sync {sync!r}" if sync else ""
        target = f" while dispatching {action}" if action else ""
        super().__init__(f"variable {var!r} is unbound{where}{target}")
        self.var = var
        self.sync = sync

class CascadeDepthExceeded(EngineError):
    def __init__(self, sync: str, depth: int, limit: int):
        super().__init__(f"sync {sync!r} reached cascade depth {depth} (limit {limit})")
        self.sync = sync
        self.depth = depth

class ResponseAuditError(EngineError):
    def __init__(self, audit: "ResponseAudit"):
        super().__init__(f"flow {audit.flow}: unanswered={audit.unanswered} duplicated={audit.duplicated}")
        self.audit = audit

# ====== Records & bindings ======

@dataclass(frozen=True)
class ActionRecord:
    seq: int
    concept: str
    action: str
    input: Mapping[str, Any]
    output: Mapping[str, Any]
    flow: str
    depth: int = 0
    t: float = field(default_factory=lambda: time.time())
    @property
    def is_error(self) -> bool:
        return ERROR in self.output
    def __repr__(self) -> str:
        return f"#{self.seq} {self.concept}.{self.action}({dict(self.input)}) -> {dict(self.output)}"

@dataclass(frozen=True)
class Var:
    name: str
    def __repr__(self) -> str:
        return f"?{self.name}"

def variables(*names: str) -> Tuple[Var, ...]:
    return tuple(Var(n) for n in names)

def vars_in(mapping: Mapping[str, Any]) -> Set[Var]:
    return {v for v in mapping.values() if isinstance(v, Var)}

class Frame(collections.abc.Mapping):
    """One consistent binding environment. Binding never mutates a Frame in place."""
    __slots__ = ("_bindings", "records")
    def __init__(self, bindings: Optional[Mapping[Var, Any]] = None, records: Iterable[ActionRecord] = ()):
        self._bindings: Dict[Var, Any] = dict(bindings or {})
        self.records: Tuple[ActionRecord, ...] = tuple(records)
    def __getitem__(self, var: Var) -> Any:
        return self._bindings[var]
    def __iter__(self) -> Iterator[Var]:
        return iter(self._bindings)
    def __len__(self) -> int:
        return len(self._bindings)
    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Frame):
            return NotImplemented
        return self._bindings == other._bindings and [r.seq for r in self.records] == [r.seq for r in other.records]
    def __repr__(self) -> str:
        return f"Frame({self._bindings}, records={[r.seq for r in self.records]})"
    def bind(self, var: Var, value: Any) -> Optional[Frame]:
        if var in self._bindings:
            return self if self._bindings[var] == value else None
        bindings = dict(self._bindings)
        bindings[var] = value
        return Frame(bindings, self.records)
    def extend(self, bindings: Mapping[Var, Any]) -> Optional[Frame]:
        frame: Optional[Frame] = self
        for var, value in bindings.items():
            frame = frame.bind(var, value)
            if frame is None:
                return None
        return frame
    def with_record(self, record: ActionRecord) -> Frame:
        return Frame(self._bindings, self.records + (record,))
    def uses(self, record: ActionRecord) -> bool:
        return any(r is record for r in self.records)
    def substitute(self, mapping: Mapping[str, Any]) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for key, value in mapping.items():
            if isinstance(value, Var):
                if value not in self._bindings:
                    raise UnboundVariableError(value)
                value = self._bindings[value]
            out[key] = value
        return out

def unify(pattern: Mapping[str, Any], actual: Mapping[str, Any], frame: Frame) -> Optional[Frame]:
    """Match a field mapping against concrete values, extending ``frame``.

    Literals must be equal, bound variables must agree and unbound variables
    bind. A field missing from ``actual`` fails; extra fields are ignored.
    """
    for key, expected in pattern.items():
        if key not in actual:
            return None
        value = actual[key]
        if isinstance(expected, Var):
            frame = frame.bind(expected, value)
            if frame is None:
                return None
        elif value != expected:
            return None
    return frame

def as_rows(result: Any) -> List[Mapping[str, Any]]:
    if result is None:
        return []
    if isinstance(result, Mapping):
        return [result]
    return list(result)

# ====== Patterns & Frame sets ======

@dataclass(frozen=True)
class WhenPattern:
    concept: str
    action: str
    inputs: Mapping[str, Any] = field(default_factory=dict)
    outputs: Mapping[str, Any] = field(default_factory=dict)
    @property
    def key(self) -> Tuple[str, str]:
        return (self.concept, self.action)
    @property
    def matches_error(self) -> bool:
        return ERROR in self.outputs
    def variables(self) -> Set[Var]:
        return vars_in(self.inputs) | vars_in(self.outputs)
    def match(self, record: ActionRecord, frame: Frame) -> Optional[Frame]:
        if (record.concept, record.action) != self.key:
            return None
        # a clause selects either the success or the error branch, never both
        if record.is_error != self.matches_error:
            return None
        extended = unify(self.inputs, record.input, frame)
        if extended is None:
            return None
        extended = unify(self.outputs, record.output, extended)
        if extended is None:
            return None
        return extended.with_record(record)

QueryFn = Callable[..., Awaitable[Any]]

class Frames(list):
    """Every binding environment still viable at one point of a sync evaluation."""
    def __init__(self, *frames: Frame):
        super().__init__(frames)
    def match(self, pattern: WhenPattern, records: Iterable[ActionRecord]) -> Frames:
        records = list(records)
        out = Frames()
        for frame in self:
            for rec in records:
                extended = pattern.match(rec, frame)
                if extended is not None:
                    out.append(extended)
        return out
    def filter(self, predicate: Callable[[Frame], bool]) -> Frames:
        return Frames(*(f for f in self if predicate(f)))
    async def query(self, fn: QueryFn, inputs: Mapping[str, Any], outputs: Mapping[str, Any]) -> Frames:
        """Join each frame against the rows of an external query.

        A frame is extended once per compatible row and dropped when there is
        none. ``outputs`` naming ``"error"`` joins against error rows instead.
        """
        want_error = ERROR in outputs
        out = Frames()
        for frame in self:
            rows = as_rows(await fn(**frame.substitute(inputs)))
            for row in rows:
                if (ERROR in row) != want_error:
                    continue
                extended = unify(outputs, row, frame)
                if extended is not None:
                    out.append(extended)
        return out
    async def absent(self, fn: QueryFn, inputs: Mapping[str, Any]) -> Frames:
        out = Frames()
        for frame in self:
            rows = as_rows(await fn(**frame.substitute(inputs)))
            if not any(ERROR not in row for row in rows):
                out.append(frame)
        return out
    def unnest(self, collection: Var, item: Var) -> Frames:
        out = Frames()
        for frame in self:
            for element in frame[collection] or ():
                extended = frame.bind(item, element)
                if extended is not None:
                    out.append(extended)
        return out

# ====== Refinement steps ======

StepFn = Callable[[Frames], Awaitable[Frames]]

class Step:
    """A declared ``where`` step. ``requires`` must already be bound; ``binds`` become bound.

    ``bind`` is called once per engine and returns the coroutine function the
    engine runs, with any concept lookups already resolved.
    """
    requires: Tuple[Var, ...] = ()
    binds: Tuple[Var, ...] = ()
    def bind(self, engine: "Engine", sync: str) -> StepFn:
        return self.apply
    async def apply(self, frames: Frames) -> Frames:
        raise NotImplementedError

class Query(Step):
    def __init__(self, concept: str, query: str, inputs: Mapping[str, Any], outputs: Mapping[str, Any]):
        self.concept, self.query = concept, query
        self.inputs, self.outputs = dict(inputs), dict(outputs)
        self.requires = tuple(vars_in(self.inputs))
        self.binds = tuple(vars_in(self.outputs))
    def bind(self, engine: "Engine", sync: str) -> StepFn:
        fn = engine.query_fn(self.concept, self.query, sync)
        async def run(frames: Frames) -> Frames:
            return await frames.query(fn, self.inputs, self.outputs)
        return run
    def __repr__(self) -> str:
        return f"Query({self.concept}.{self.query})"

class Absent(Step):
    def __init__(self, concept: str, query: str, inputs: Mapping[str, Any]):
        self.concept, self.query = concept, query
        self.inputs = dict(inputs)
        self.requires = tuple(vars_in(self.inputs))
    def bind(self, engine: "Engine", sync: str) -> StepFn:
        fn = engine.query_fn(self.concept, self.query, sync)
        async def run(frames: Frames) -> Frames:
            return await frames.absent(fn, self.inputs)
        return run
    def __repr__(self) -> str:
        return f"Absent({self.concept}.{self.query})"

class Filter(Step):
    def __init__(self, predicate: Callable[[Frame], bool], uses: Sequence[Var] = ()):
        self.predicate = predicate
        self.requires = tuple(uses)
    async def apply(self, frames: Frames) -> Frames:
        return frames.filter(self.predicate)

class Unnest(Step):
    def __init__(self, collection: Var, item: Var):
        self.collection, self.item = collection, item
        self.requires = (collection,)
        self.binds = (item,)
    async def apply(self, frames: Frames) -> Frames:
        return frames.unnest(self.collection, self.item)

class Refine(Step):
    def __init__(self, fn: StepFn, uses: Sequence[Var] = (), binds: Sequence[Var] = ()):
        self.fn = fn
        self.requires = tuple(uses)
        self.binds = tuple(binds)
    async def apply(self, frames: Frames) -> Frames:
        return Frames(*(await self.fn(frames)))

# ====== Syncs ======

@dataclass(frozen=True)
class ThenAction:
    concept: str
    action: str
    inputs: Mapping[str, Any] = field(default_factory=dict)

@dataclass(frozen=True)
class Sync:
    name: str
    when: Sequence[WhenPattern]
    then: Sequence[ThenAction]
    where: Sequence[Step] = ()

@dataclass(frozen=True)
class _Compiled:
    sync: Sync
    keys: Tuple[Tuple[str, str], ...]
    where: Tuple[StepFn, ...]

@dataclass
class ResponseAudit:
    flow: str
    unanswered: List[str] = field(default_factory=list)
    duplicated: List[str] = field(default_factory=list)
    @property
    def ok(self) -> bool:
        return not self.unanswered and not self.duplicated

class Cascade:
    """The record log and pending work queue of one flow."""
    def __init__(self, flow: str):
        self.flow = flow
        self.records: List[ActionRecord] = []
        self._pending: Deque[ActionRecord] = deque()
    @property
    def root(self) -> ActionRecord:
        return self.records[0]
    def append(self, concept: str, action: str, input_map: Mapping[str, Any], output: Mapping[str, Any], depth: int) -> ActionRecord:
        rec = ActionRecord(seq=len(self.records), concept=concept, action=action,
                           input=MappingProxyType(dict(input_map)), output=MappingProxyType(dict(output)),
                           flow=self.flow, depth=depth)
        self.records.append(rec)
        self._pending.append(rec)
        return rec
    def next_pending(self) -> Optional[ActionRecord]:
        return self._pending.popleft() if self._pending else None
    def until(self, rec: ActionRecord) -> List[ActionRecord]:
        return self.records[:rec.seq + 1]
    def find(self, concept: str, action: str) -> List[ActionRecord]:
        return [r for r in self.records if r.concept == concept and r.action == action]
    def audit_responses(self, concept: str = "Requesting") -> ResponseAudit:
        audit = ResponseAudit(self.flow)
        counts: Dict[str, int] = {}
        for rec in self.find(concept, "request"):
            if not rec.is_error:
                counts.setdefault(rec.output["request"], 0)
        for rec in self.find(concept, "respond"):
            request = rec.input.get("request")
            if request in counts:
                counts[request] += 1
        for request, n in counts.items():
            if n == 0:
                audit.unanswered.append(request)
            elif n > 1:
                audit.duplicated.append(request)
        return audit

# ====== Concepts ======

class Concept:
    def __init__(self, name: str):
        self.name = name
    def _method(self, name: str) -> Callable[..., Any]:
        fn = getattr(self, name, None)
        if fn is None or not callable(fn):
            raise AttributeError(f"{self.name}.{name} not found")
        return fn
    def _bind(self, fn: Callable[..., Any], name: str, input_map: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        # bind against the plain function so a "self" key collides with the instance
        func = getattr(fn, "__func__", None)
        try:
            if func is not None:
                inspect.signature(func).bind(self, **input_map)
            else:
                inspect.signature(fn).bind(**input_map)
        except TypeError as exc:
            return {ERROR: f"Invalid input for {self.name}.{name}: {exc}"}
        return None
    async def perform(self, action: str, input_map: Mapping[str, Any]) -> Dict[str, Any]:
        if action.startswith("_"):
            raise ValueError(f"{self.name}.{action} is a query, not an action")
        fn = self._method(action)
        invalid = self._bind(fn, action, input_map)
        if invalid is not None:
            return invalid
        result = fn(**input_map)
        if inspect.isawaitable(result):
            result = await result
        if result is None:
            return {}
        if not isinstance(result, Mapping):
            raise TypeError(f"{self.name}.{action} returned {type(result).__name__}, expected a mapping")
        return dict(result)
    async def query(self, qname: str, input_map: Mapping[str, Any]) -> List[Dict[str, Any]]:
        if not qname.startswith("_"):
            raise ValueError("Query names must start with '_' to be pure")
        fn = self._method(qname)
        invalid = self._bind(fn, qname, input_map)
        if invalid is not None:
            return [invalid]
        result = fn(**input_map)
        if inspect.isawaitable(result):
            result = await result
        return [dict(row) for row in as_rows(result)]

# ====== Engine ======

class Engine:
    def __init__(self, concepts: Iterable[Concept], syncs: Iterable[Sync], *, max_depth: int = 20,
                 strict_responses: bool = False, requesting: str = "Requesting"):
        self.concepts: Dict[str, Concept] = {c.name: c for c in concepts}
        self.syncs: Tuple[Sync, ...] = tuple(syncs)
        self.max_depth = max_depth
        self.strict_responses = strict_responses
        self.requesting = requesting
        self.flow_log: Dict[str, Cascade] = {}
        self._lock = threading.Lock()
        self._by_action: Dict[Tuple[str, str], List[_Compiled]] = {}
        seen: Set[str] = set()
        for sync in self.syncs:
            if sync.name in seen:
                raise SyncDefinitionError(sync.name, "duplicate sync name")
            seen.add(sync.name)
            compiled = self._compile(sync)
            for key in compiled.keys:
                self._by_action.setdefault(key, []).append(compiled)
    def _concept(self, name: str, sync: str) -> Concept:
        concept = self.concepts.get(name)
        if concept is None:
            raise SyncDefinitionError(sync, f"unknown concept {name!r}")
        return concept
    def action_fn(self, concept: str, action: str, sync: str) -> Callable[..., Any]:
        target = self._concept(concept, sync)
        if action.startswith("_") or not callable(getattr(target, action, None)):
            raise SyncDefinitionError(sync, f"unknown action {concept}.{action}")
        return getattr(target, action)
    def query_fn(self, concept: str, qname: str, sync: str) -> QueryFn:
        target = self._concept(concept, sync)
        if not qname.startswith("_") or not callable(getattr(target, qname, None)):
            raise SyncDefinitionError(sync, f"unknown query {concept}.{qname}")
        async def call(**input_map: Any) -> List[Dict[str, Any]]:
            return await target.query(qname, input_map)
        return call
    def _compile(self, sync: Sync) -> _Compiled:
        if not sync.when:
            raise SyncDefinitionError(sync.name, "empty when clause")
        if not sync.then:
            raise SyncDefinitionError(sync.name, "empty then clause")
        bound: Set[Var] = set()
        keys: List[Tuple[str, str]] = []
        for pattern in sync.when:
            self.action_fn(pattern.concept, pattern.action, sync.name)
            if pattern.matches_error and len(pattern.outputs) > 1:
                raise SyncDefinitionError(sync.name, f"{pattern.concept}.{pattern.action} cannot match error and result fields together")
            bound |= pattern.variables()
            if pattern.key not in keys:
                keys.append(pattern.key)
        where: List[StepFn] = []
        for step in sync.where:
            missing = [v for v in step.requires if v not in bound]
            if missing:
                raise SyncDefinitionError(sync.name, f"{step!r} reads unbound {missing}")
            where.append(step.bind(self, sync.name))
            bound |= set(step.binds)
        for action in sync.then:
            self.action_fn(action.concept, action.action, sync.name)
            missing = sorted((v for v in vars_in(action.inputs) if v not in bound), key=lambda v: v.name)
            if missing:
                raise SyncDefinitionError(sync.name, f"{action.concept}.{action.action} uses unbound {missing}")
        return _Compiled(sync=sync, keys=tuple(keys), where=tuple(where))
    def start_flow(self) -> str:
        return str(uuid4())
    async def invoke(self, concept: str, action: str, input_map: Mapping[str, Any], *, flow: Optional[str] = None) -> Cascade:
        """Perform one operation and run every sync it transitively triggers to fixpoint."""
        cascade = Cascade(flow or self.start_flow())
        with self._lock:
            if cascade.flow in self.flow_log:
                raise EngineError(f"flow {cascade.flow} is already running")
            self.flow_log[cascade.flow] = cascade
        try:
            await self._perform(cascade, concept, action, input_map, depth=0)
            await self._run(cascade)
            logger.info("flow %s settled after %d records in %.3fs", cascade.flow, len(cascade.records),
                        cascade.records[-1].t - cascade.root.t)
            self._audit(cascade)
        except EngineError as exc:
            exc.cascade = cascade
            raise
        finally:
            with self._lock:
                self.flow_log.pop(cascade.flow, None)
        return cascade
    async def query(self, concept: str, qname: str, **kwargs: Any) -> List[Dict[str, Any]]:
        return await self.concepts[concept].query(qname, kwargs)
    async def _perform(self, cascade: Cascade, concept: str, action: str, input_map: Mapping[str, Any], depth: int) -> ActionRecord:
        output = await self.concepts[concept].perform(action, input_map)
        rec = cascade.append(concept, action, input_map, output, depth)
        logger.debug("flow %s: %r", cascade.flow, rec)
        return rec
    async def _run(self, cascade: Cascade) -> None:
        while True:
            rec = cascade.next_pending()
            if rec is None:
                return
            for compiled in self._by_action.get((rec.concept, rec.action), ()):
                await self._fire(compiled, rec, cascade)
    def _match(self, sync: Sync, rec: ActionRecord, records: List[ActionRecord]) -> Frames:
        frames = Frames(Frame())
        for pattern in sync.when:
            frames = frames.match(pattern, records)
            if not frames:
                return frames
        # a record combination fires only when its latest record arrives
        return frames.filter(lambda f: f.uses(rec))
    async def _fire(self, compiled: _Compiled, rec: ActionRecord, cascade: Cascade) -> None:
        sync = compiled.sync
        frames = self._match(sync, rec, cascade.until(rec))
        for step in compiled.where:
            if not frames:
                break
            frames = await step(frames)
        if not frames:
            return
        logger.debug("flow %s: %s fires on #%d with %d frame(s)", cascade.flow, sync.name, rec.seq, len(frames))
        for frame in frames:
            depth = max((r.depth for r in frame.records), default=rec.depth) + 1
            if depth >= self.max_depth:
                raise CascadeDepthExceeded(sync.name, depth, self.max_depth)
            for action in sync.then:
                try:
                    input_map = frame.substitute(action.inputs)
                except UnboundVariableError as exc:
                    raise UnboundVariableError(exc.var, sync=sync.name, action=f"{action.concept}.{action.action}") from None
                await self._perform(cascade, action.concept, action.action, input_map, depth)
    def _audit(self, cascade: Cascade) -> None:
        if self.requesting not in self.concepts:
            return
        audit = cascade.audit_responses(self.requesting)
        if audit.ok:
            return
        logger.warning("flow %s: unanswered requests %s, duplicated responses %s",
                       cascade.flow, audit.unanswered, audit.duplicated)
        if self.strict_responses:
            raise ResponseAuditError(audit)
