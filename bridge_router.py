"""Request router: parse, authorize, dispatch, encode.

Every failure below the router surfaces as ``{"success": false, "error": ...}``;
nothing a handler raises may escape into the listener loop.
"""

import base64
import binascii
import json
import sys
import traceback

from pydantic_core import to_jsonable_python

from bridge_contexts import ContextRegistry
from bridge_errors import (
    BridgeError,
    MalformedRequest,
    ResultNotEncodable,
    Unauthorized,
    UnknownCommand,
)
from bridge_invoker import Invoker


def _required(req: dict, field: str) -> str:
    value = req.get(field)
    if value is None or value == "":
        raise MalformedRequest(f"{field} is required")
    return str(value)


def _optional_str(req: dict, field: str) -> str | None:
    value = req.get(field)
    if value is None or value == "":
        return None
    return str(value)


def _timeout_ms(req: dict) -> int | None:
    value = req.get("timeoutMs")
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MalformedRequest(f"timeoutMs must be an integer, got {value!r}") from None


def _flag(req: dict, field: str, default: bool) -> bool:
    value = req.get(field)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise MalformedRequest(f"{field} must be a boolean, got {value!r}")


def encode_response(resp: dict) -> str:
    """Compact JSON; values JSON can't carry fall back to their ``str()``."""
    return json.dumps(to_jsonable_python(resp, fallback=str), separators=(",", ":"))


class RequestRouter:
    def __init__(self, registry: ContextRegistry, invoker: Invoker,
                 auth_token: str | None = None):
        self.registry = registry
        self.invoker = invoker
        self.auth_token = auth_token
        # Set by stop-server; the listener stops the server once the reply is out.
        self.stop_requested = False
        self._handlers = {
            "create-context": self._create_context,
            "destroy-context": self._destroy_context,
            "load-module-from-path": self._load_from_path,
            "load-module-from-bytes": self._load_from_bytes,
            "create-instance": self._create_instance,
            "invoke": self._invoke,
            "release-instance": self._release_instance,
            "list-modules": self._list_modules,
            "stop-server": self._stop_server,
        }

    @property
    def commands(self) -> list[str]:
        return list(self._handlers)

    def handle_message(self, raw: bytes | str) -> str:
        """Turn one raw wire message into one encoded response."""
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        resp = self.handle_text(raw)
        try:
            return encode_response(resp)
        except Exception as e:
            # e.g. a circular result or a __str__ that raises
            print(f"[bridge] cannot encode response: {type(e).__name__}: {e}",
                  file=sys.stderr, flush=True)
            failure = ResultNotEncodable(f"{type(e).__name__}: {e}")
            return encode_response({"success": False, "error": failure.describe()})

    def handle_text(self, text: str) -> dict:
        if not text.strip():
            text = "{}"
        try:
            req = json.loads(text)
        except json.JSONDecodeError as e:
            return {"success": False, "error": MalformedRequest(f"invalid JSON: {e}").describe()}
        if not isinstance(req, dict):
            return {"success": False,
                    "error": MalformedRequest("request must be a JSON object").describe()}
        return self.handle(req)

    def handle(self, req: dict) -> dict:
        """Dispatch a decoded request; always returns a response dict."""
        try:
            if self.auth_token is not None and req.get("authToken") != self.auth_token:
                raise Unauthorized()
            cmd = req.get("cmd") or ""
            handler = self._handlers.get(cmd)
            if handler is None:
                raise UnknownCommand(f"unknown command: {cmd}")
            result = handler(req)
            return {"success": True, **result}
        except BridgeError as e:
            return {"success": False, "error": e.describe()}
        except (Exception, SystemExit, KeyboardInterrupt) as e:
            # Loaded code may call sys.exit(); that must not end the listener.
            print(f"[bridge] {req.get('cmd')!r} failed: {type(e).__name__}: {e}",
                  file=sys.stderr, flush=True)
            return {
                "success": False,
                "error": f"{type(e).__name__}: {e}",
                "traceback": traceback.format_exc(),
            }

    # ------------------------------------------------------------------
    # Command handlers
    # ------------------------------------------------------------------

    def _create_context(self, req: dict) -> dict:
        return {"contextId": self.registry.create(_optional_str(req, "contextId"))}

    def _destroy_context(self, req: dict) -> dict:
        self.registry.destroy(_required(req, "contextId"))
        return {}

    def _load_from_path(self, req: dict) -> dict:
        path = _required(req, "path")
        with self.registry.session(_required(req, "contextId")) as ctx:
            name = ctx.load_from_path(path, _optional_str(req, "alias"))
        return {"moduleName": name}

    def _load_from_bytes(self, req: dict) -> dict:
        encoded = _required(req, "bytesBase64")
        try:
            raw = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise MalformedRequest(f"bytesBase64 is not valid base64: {e}") from e
        with self.registry.session(_required(req, "contextId")) as ctx:
            name = ctx.load_from_bytes(raw, _optional_str(req, "name"))
        return {"moduleName": name}

    def _create_instance(self, req: dict) -> dict:
        type_name = _required(req, "typeName")
        with self.registry.session(_required(req, "contextId")) as ctx:
            instance_id = self.invoker.create_instance(
                ctx, type_name, req.get("ctorArgsJson"), _timeout_ms(req))
        return {"instanceId": instance_id}

    def _invoke(self, req: dict) -> dict:
        method_name = _required(req, "methodName")
        with self.registry.session(_required(req, "contextId")) as ctx:
            result = self.invoker.invoke(
                ctx,
                _optional_str(req, "typeName"),
                method_name,
                is_static=_flag(req, "isStatic", default=True),
                instance_id=_optional_str(req, "instanceId"),
                args=req.get("argsJson"),
                timeout_ms=_timeout_ms(req),
            )
        return {"result": result}

    def _release_instance(self, req: dict) -> dict:
        instance_id = _required(req, "instanceId")
        with self.registry.session(_required(req, "contextId")) as ctx:
            released = ctx.instances.release(instance_id)
        return {"released": released}

    def _list_modules(self, req: dict) -> dict:
        with self.registry.session(_required(req, "contextId")) as ctx:
            return {"modules": ctx.module_names()}

    def _stop_server(self, req: dict) -> dict:
        self.stop_requested = True
        self.registry.stop_all()
        return {}
