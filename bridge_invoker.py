"""Reflective construction and method invocation on loaded classes.

Overloads are the signatures registered with ``typing.overload``; a callable
without any is its own single candidate. A candidate matches when the argument
count binds positionally and every JSON argument validates against the
declared annotation after a JSON round trip through pydantic. Among matches
the one with the most exact-type arguments wins, ties going to declaration
order.
"""

import inspect
import json
import queue
import sys
import threading
import types
import typing

from pydantic import PydanticUserError, TypeAdapter

from bridge_contexts import ExecutionContext
from bridge_errors import (
    ConstructorNotFound,
    InvocationTimeout,
    MalformedRequest,
    MethodNotFound,
    TypeNotFound,
)

_EMPTY = inspect.Parameter.empty
_POSITIONAL = (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)


class _NotCoercible(Exception):
    pass


def _adapter_for(annotation, cache: dict | None = None) -> TypeAdapter:
    if cache is None:
        return TypeAdapter(annotation)
    try:
        adapter = cache.get(annotation)
    except TypeError:
        # unhashable annotation
        return TypeAdapter(annotation)
    if adapter is None:
        adapter = cache[annotation] = TypeAdapter(annotation)
    return adapter


def coerce_value(value, annotation, cache: dict | None = None):
    """Round-trip ``value`` through JSON into ``annotation``.

    Returns ``(coerced, exact)`` where ``exact`` means the value already was an
    instance of the declared class. Adapters are memoized in ``cache`` when given.
    Raises _NotCoercible.
    """
    if annotation is _EMPTY or annotation is typing.Any or isinstance(annotation, str):
        return value, False
    try:
        coerced = _adapter_for(annotation, cache).validate_json(json.dumps(value))
    except (PydanticUserError, TypeError, ValueError) as e:
        raise _NotCoercible(str(e)) from e
    exact = isinstance(annotation, type) and type(value) is annotation
    return coerced, exact


def _type_hints(func) -> dict:
    try:
        return typing.get_type_hints(func)
    except Exception:
        return dict(getattr(func, "__annotations__", {}))


class Candidate:
    """One callable signature considered during overload resolution."""

    def __init__(self, signature: inspect.Signature | None, hints: dict | None = None,
                 skip_first: bool = False):
        self.signature = signature
        self.positional: list[inspect.Parameter] = []
        self.var_positional = None
        self.required = 0
        self.callable_positionally = True
        self.hints = hints or {}
        if signature is None:
            return
        params = list(signature.parameters.values())
        if skip_first and params and params[0].kind in _POSITIONAL:
            params = params[1:]
        for p in params:
            if p.kind in _POSITIONAL:
                self.positional.append(p)
                if p.default is _EMPTY:
                    self.required += 1
            elif p.kind is inspect.Parameter.VAR_POSITIONAL:
                self.var_positional = p
            elif p.kind is inspect.Parameter.KEYWORD_ONLY and p.default is _EMPTY:
                self.callable_positionally = False

    @classmethod
    def from_function(cls, func, skip_first: bool = False) -> "Candidate":
        try:
            signature = inspect.signature(func)
        except (TypeError, ValueError):
            return cls(None)
        # Class-level annotations describe attributes, not constructor parameters.
        hints = {} if isinstance(func, type) else _type_hints(func)
        return cls(signature, hints, skip_first)

    def accepts(self, count: int) -> bool:
        if self.signature is None:
            return True
        if not self.callable_positionally or count < self.required:
            return False
        return count <= len(self.positional) or self.var_positional is not None

    def _annotation(self, index: int):
        param = self.positional[index] if index < len(self.positional) else self.var_positional
        return self.hints.get(param.name, param.annotation)

    def coerce(self, args: list, cache: dict | None = None) -> tuple[list, int]:
        if self.signature is None:
            return list(args), 0
        coerced, exact = [], 0
        for i, value in enumerate(args):
            converted, is_exact = coerce_value(value, self._annotation(i), cache)
            coerced.append(converted)
            exact += is_exact
        return coerced, exact


def _overloads(func) -> list:
    try:
        return list(typing.get_overloads(func))
    except Exception:
        return []


def constructor_candidates(klass: type) -> list[Candidate]:
    init = klass.__init__
    if inspect.isfunction(init):
        stubs = _overloads(init)
        if stubs:
            return [Candidate.from_function(stub, skip_first=True) for stub in stubs]
        return [Candidate.from_function(init, skip_first=True)]
    return [Candidate.from_function(klass)]


def _lookup_member(klass: type, name: str):
    for base in inspect.getmro(klass):
        if name in vars(base):
            return vars(base)[name]
    return None


def method_candidates(klass: type, name: str, is_static: bool) -> list[Candidate]:
    """Signatures of ``klass.name`` that have the requested binding."""
    member = _lookup_member(klass, name)
    if member is None:
        return []
    if isinstance(member, staticmethod):
        func, skip_first, static = member.__func__, False, True
    elif isinstance(member, classmethod):
        func, skip_first, static = member.__func__, True, True
    elif inspect.isfunction(member):
        func, skip_first, static = member, True, False
    elif isinstance(member, types.ClassMethodDescriptorType):
        return [Candidate.from_function(getattr(klass, name))] if is_static else []
    elif callable(member) or inspect.ismethoddescriptor(member):
        return [Candidate.from_function(member, skip_first=True)] if not is_static else []
    else:
        return []
    if static != is_static:
        return []
    stubs = _overloads(func)
    if stubs:
        return [Candidate.from_function(stub, skip_first) for stub in stubs]
    return [Candidate.from_function(func, skip_first)]


def select_candidate(candidates: list[Candidate], args: list, cache: dict | None = None):
    """Pick the best fully-coercible candidate; None when nothing matches."""
    best = None
    for candidate in candidates:
        if not candidate.accepts(len(args)):
            continue
        try:
            coerced, exact = candidate.coerce(args, cache)
        except _NotCoercible:
            continue
        if best is None or exact > best[0]:
            best = (exact, candidate, coerced)
    if best is None:
        return None
    return best[1], best[2]


def parse_arguments(payload) -> list:
    """Accept a JSON array as text or already decoded; blank or null means none."""
    if payload is None:
        return []
    if isinstance(payload, str):
        if not payload.strip():
            return []
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            raise MalformedRequest(f"arguments are not valid JSON: {e}") from e
        if payload is None:
            return []
    if not isinstance(payload, list):
        raise MalformedRequest(f"arguments must be a JSON array, got {type(payload).__name__}")
    return payload


def call_with_timeout(func, args: list, timeout: float | None, label: str):
    """Run ``func(*args)`` on a daemon worker and wait at most ``timeout`` seconds.

    A call that overruns keeps running in the background; it can't be cancelled.
    """
    if not timeout or timeout <= 0:
        return func(*args)
    outcome = queue.Queue(maxsize=1)

    def _run():
        try:
            outcome.put(("ok", func(*args)))
        except BaseException as e:
            # includes SystemExit raised by loaded code
            outcome.put(("error", e))

    worker = threading.Thread(target=_run, name=f"bridge-call:{label}", daemon=True)
    worker.start()
    try:
        kind, value = outcome.get(timeout=timeout)
    except queue.Empty:
        print(f"[bridge] {label}: timed out after {timeout}s, left running in background",
              file=sys.stderr, flush=True)
        raise InvocationTimeout(f"{label} did not complete within {timeout}s") from None
    if kind == "error":
        raise value
    return value


class Invoker:
    def __init__(self, default_timeout: float | None = 30.0):
        self.default_timeout = default_timeout

    def _timeout(self, timeout_ms) -> float | None:
        if timeout_ms is not None and timeout_ms > 0:
            return timeout_ms / 1000.0
        return self.default_timeout

    def create_instance(self, ctx: ExecutionContext, type_name: str, ctor_args=None,
                        timeout_ms: int | None = None) -> str:
        klass = ctx.resolve_type(type_name)
        if klass is None:
            raise TypeNotFound(f"type not found: {type_name}")
        args = parse_arguments(ctor_args)
        chosen = select_candidate(constructor_candidates(klass), args, ctx.adapters)
        if chosen is None:
            raise ConstructorNotFound(
                f"constructor for {type_name} with argument count {len(args)} not found")
        _, coerced = chosen
        instance = call_with_timeout(klass, coerced, self._timeout(timeout_ms),
                                     f"{type_name}()")
        return ctx.instances.add(instance)

    def invoke(self, ctx: ExecutionContext, type_name: str | None, method_name: str,
               is_static: bool = True, instance_id: str | None = None, args=None,
               timeout_ms: int | None = None):
        target = None
        if instance_id:
            target = ctx.instances.get(instance_id)
            klass = type(target)
        else:
            klass = ctx.resolve_type(type_name)
            if klass is None:
                raise TypeNotFound(f"type not found: {type_name}")
        if not is_static and target is None:
            raise MalformedRequest(f"instanceId is required to invoke instance method {method_name}")

        values = parse_arguments(args)
        chosen = select_candidate(method_candidates(klass, method_name, is_static), values,
                                  ctx.adapters)
        if chosen is None:
            binding = "static" if is_static else "instance"
            raise MethodNotFound(
                f"{binding} method {method_name} with {len(values)} arguments not found "
                f"on {klass.__qualname__}")
        _, coerced = chosen
        bound = getattr(klass if is_static else target, method_name)
        return call_with_timeout(bound, coerced, self._timeout(timeout_ms),
                                 f"{klass.__qualname__}.{method_name}")
