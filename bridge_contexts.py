"""Execution contexts: isolated module namespaces and live instance tables.

Each context executes the modules it loads into fresh module objects whose
``sys.modules`` keys are private to that context, so two contexts never share
classes or instances even when they load the same file.
"""

import builtins
import contextlib
import hashlib
import re
import sys
import threading
import types
import typing
import uuid
from pathlib import Path

from bridge_errors import (
    ContextNotFound,
    DuplicateContext,
    FileNotFound,
    InstanceNotFound,
    ModuleLoadError,
    TeardownFailed,
)

# sys.modules keys of context-loaded modules start with this; the intrinsic
# type fallback never looks behind it.
MODULE_KEY_PREFIX = "_bridge_ctx_"


def _walk_attributes(root, dotted: str):
    obj = root
    for part in dotted.split("."):
        if not part:
            return None
        obj = getattr(obj, part, None)
        if obj is None:
            return None
    return obj


def resolve_intrinsic_type(full_name: str) -> type | None:
    """Look a type up in builtins or in modules the process already imported."""
    if "." not in full_name:
        found = getattr(builtins, full_name, None)
        return found if isinstance(found, type) else None
    parts = full_name.split(".")
    for i in range(len(parts) - 1, 0, -1):
        module_name = ".".join(parts[:i])
        if module_name.startswith(MODULE_KEY_PREFIX):
            return None
        module = sys.modules.get(module_name)
        if module is None:
            continue
        found = _walk_attributes(module, ".".join(parts[i:]))
        if isinstance(found, type):
            return found
    return None


def _forget_module_key(module_key: str):
    """Drop a context module from sys.modules and from typing's overload registry."""
    sys.modules.pop(module_key, None)
    # typing keeps overload stubs keyed by the defining module's name
    overloads = getattr(typing, "_overload_registry", None)
    if overloads is not None:
        overloads.pop(module_key, None)


class LoadedModule:
    """A module registered in a context under ``name``."""

    def __init__(self, name: str, intrinsic_name: str, module: types.ModuleType, origin: str):
        self.name = name
        self.intrinsic_name = intrinsic_name
        self.module = module
        self.origin = origin

    @property
    def module_key(self) -> str:
        return self.module.__name__

    def find_type(self, full_name: str) -> type | None:
        for prefix in (self.name, self.intrinsic_name):
            if full_name.startswith(prefix + "."):
                found = _walk_attributes(self.module, full_name[len(prefix) + 1:])
                if isinstance(found, type):
                    return found
        found = _walk_attributes(self.module, full_name)
        return found if isinstance(found, type) else None


class InstanceTable:
    """Opaque ``inst_<hex>`` ids mapped to live objects."""

    def __init__(self):
        self._objects: dict[str, object] = {}

    def add(self, obj) -> str:
        instance_id = f"inst_{uuid.uuid4().hex}"
        while instance_id in self._objects:
            instance_id = f"inst_{uuid.uuid4().hex}"
        self._objects[instance_id] = obj
        return instance_id

    def get(self, instance_id: str):
        try:
            return self._objects[instance_id]
        except KeyError:
            raise InstanceNotFound(f"instance not found: {instance_id}") from None

    def release(self, instance_id: str) -> bool:
        if instance_id not in self._objects:
            return False
        del self._objects[instance_id]
        return True

    def items(self) -> list[tuple[str, object]]:
        return list(self._objects.items())

    def __contains__(self, instance_id) -> bool:
        return instance_id in self._objects

    def __len__(self) -> int:
        return len(self._objects)


class ExecutionContext:
    def __init__(self, context_id: str):
        self.id = context_id
        self._key_stem = MODULE_KEY_PREFIX + re.sub(r"\W", "_", context_id)
        # lowercase name -> LoadedModule, in registration order
        self._modules: dict[str, LoadedModule] = {}
        self.instances = InstanceTable()
        # annotation -> pydantic TypeAdapter, filled by the invoker
        self.adapters: dict = {}

    # ------------------------------------------------------------------
    # Module loading
    # ------------------------------------------------------------------

    def load_from_path(self, path: str, alias: str | None = None) -> str:
        """Load a Python source file; register it under ``alias`` or the file stem."""
        file_path = Path(path)
        if not file_path.is_file():
            raise FileNotFound(f"file not found: {path}")
        raw = file_path.read_bytes()
        return self._load(raw, file_path.stem, str(file_path.absolute()), alias)

    def load_from_bytes(self, raw: bytes, name: str | None = None) -> str:
        """Load Python source handed over in memory.

        Without ``name`` the module is registered under a name derived from
        the content hash, so loading the same bytes twice replaces itself.
        """
        intrinsic = f"module_{hashlib.sha256(raw).hexdigest()[:12]}"
        return self._load(raw, intrinsic, f"<bridge:{name or intrinsic}>", name)

    def _load(self, raw: bytes, intrinsic_name: str, origin: str, alias: str | None) -> str:
        name = alias or intrinsic_name
        safe_name = re.sub(r"\W", "_", name)
        module_key = f"{self._key_stem}_{uuid.uuid4().hex[:8]}_{safe_name}"
        try:
            source = raw.decode("utf-8-sig")
            code = compile(source, origin, "exec", dont_inherit=True)
        except (UnicodeDecodeError, SyntaxError, ValueError) as e:
            raise ModuleLoadError(f"cannot compile module {name}: {e}") from e

        module = types.ModuleType(module_key)
        module.__file__ = origin
        sys.modules[module_key] = module
        try:
            exec(code, module.__dict__)
        except BaseException as e:
            # SystemExit and KeyboardInterrupt from module code must not reach the listener.
            _forget_module_key(module_key)
            raise ModuleLoadError(f"failed to execute module {name}: {type(e).__name__}: {e}") from e

        previous = self._modules.get(name.lower())
        if previous is not None:
            _forget_module_key(previous.module_key)
            self.adapters.clear()
        self._modules[name.lower()] = LoadedModule(name, intrinsic_name, module, origin)
        print(f"[bridge] {self.id}: loaded module {name} from {origin}", file=sys.stderr, flush=True)
        return name

    def module_names(self) -> list[str]:
        return [m.name for m in self._modules.values()]

    def resolve_type(self, full_name: str) -> type | None:
        """Find a class by dotted name across loaded modules, then the intrinsic universe."""
        if not full_name:
            return None
        for loaded in list(self._modules.values()):
            try:
                found = loaded.find_type(full_name)
            except Exception:
                # Attribute hooks in loaded code may raise; treat as a miss.
                continue
            if found is not None:
                return found
        return resolve_intrinsic_type(full_name)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def teardown(self):
        """Close live instances and drop loaded modules.

        Instances whose ``close()`` fails stay registered and the context keeps
        its modules, so a later teardown can retry.
        """
        failures = []
        for instance_id, obj in self.instances.items():
            close = getattr(obj, "close", None)
            if callable(close):
                try:
                    close()
                except Exception as e:
                    failures.append(f"{instance_id}: {type(e).__name__}: {e}")
                    continue
            self.instances.release(instance_id)
        if failures:
            raise TeardownFailed(f"teardown of context {self.id} failed: " + "; ".join(failures))
        self.drop_modules()

    def drop_modules(self):
        for loaded in self._modules.values():
            _forget_module_key(loaded.module_key)
        self._modules.clear()
        self.adapters.clear()


class ContextRegistry:
    """Thread-safe map of context id (case-insensitive) to ExecutionContext."""

    def __init__(self):
        self._contexts: dict[str, ExecutionContext] = {}
        self._lock = threading.RLock()

    def create(self, requested_id: str | None = None) -> str:
        with self._lock:
            if requested_id:
                context_id = requested_id
                if context_id.casefold() in self._contexts:
                    raise DuplicateContext(f"context already exists: {context_id}")
            else:
                context_id = uuid.uuid4().hex
                while context_id in self._contexts:
                    context_id = uuid.uuid4().hex
            self._contexts[context_id.casefold()] = ExecutionContext(context_id)
        print(f"[bridge] context {context_id} created", file=sys.stderr, flush=True)
        return context_id

    def lookup(self, context_id: str | None) -> ExecutionContext:
        with self._lock:
            ctx = self._contexts.get((context_id or "").casefold())
        if ctx is None:
            raise ContextNotFound(f"context not found: {context_id}")
        return ctx

    @contextlib.contextmanager
    def session(self, context_id: str | None):
        """Hold the registry lock for the whole operation on one context."""
        with self._lock:
            yield self.lookup(context_id)

    def destroy(self, context_id: str | None) -> None:
        with self._lock:
            ctx = self.lookup(context_id)
            ctx.teardown()
            del self._contexts[ctx.id.casefold()]
        print(f"[bridge] context {ctx.id} destroyed", file=sys.stderr, flush=True)

    def stop_all(self) -> None:
        """Tear down every context, ignoring individual failures, then clear."""
        with self._lock:
            for ctx in list(self._contexts.values()):
                try:
                    ctx.teardown()
                except Exception as e:
                    print(f"[bridge] teardown of {ctx.id} failed during stop: {e}",
                          file=sys.stderr, flush=True)
                    ctx.drop_modules()
            self._contexts.clear()

    def ids(self) -> list[str]:
        with self._lock:
            return [ctx.id for ctx in self._contexts.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._contexts)
