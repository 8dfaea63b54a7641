#!/usr/bin/env python3
"""Client side of the module bridge.

``send_request`` performs one request per connection. ``BridgeClient`` stamps
the auth token and offers one helper per command. Run as a script it relays
JSON requests from stdin to a server and writes JSON responses to stdout:

  {"cmd": "create-context"}                        -> {"success": true, "contextId": "..."}
  {"cmd": "load-module-from-path", "contextId": "...", "path": "..."}
                                                   -> {"success": true, "moduleName": "..."}
  {"cmd": "invoke", "contextId": "...", "typeName": "...", "methodName": "...", "argsJson": "[...]"}
                                                   -> {"success": true, "result": ...}
"""

import base64
import json
import os
import socket
import sys
import time

from bridge_server import MESSAGE_END, channel_path, read_message

CONNECT_RETRY_SECONDS = 0.05


def send_request(channel: str, request: dict, timeout: float = 15.0) -> dict:
    """Send one request and return the decoded response.

    Connecting is retried until ``timeout`` elapses since the server only
    accepts between requests. ``timeout`` also bounds the wait for the reply.
    """
    path = channel_path(channel)
    deadline = time.monotonic() + timeout
    while True:
        conn = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            conn.settimeout(max(deadline - time.monotonic(), 0.01))
            conn.connect(path)
            break
        except OSError:
            conn.close()
            if time.monotonic() >= deadline:
                raise TimeoutError(f"could not connect to {path} within {timeout}s")
            time.sleep(CONNECT_RETRY_SECONDS)
    with conn:
        conn.sendall(json.dumps(request).encode("utf-8") + MESSAGE_END)
        conn.shutdown(socket.SHUT_WR)
        conn.settimeout(max(deadline - time.monotonic(), 0.01))
        raw = read_message(conn)
    if not raw:
        raise RuntimeError("bridge closed the connection without a response")
    return json.loads(raw.decode("utf-8"))


class BridgeClient:
    def __init__(self, channel: str, auth_token: str | None = None, timeout: float = 15.0):
        self.channel = channel
        self.auth_token = auth_token
        self.timeout = timeout

    def send(self, cmd: str, timeout: float | None = None, **fields) -> dict:
        request = {"cmd": cmd, **{k: v for k, v in fields.items() if v is not None}}
        if self.auth_token is not None:
            request["authToken"] = self.auth_token
        return send_request(self.channel, request, timeout or self.timeout)

    def create_context(self, context_id: str | None = None) -> dict:
        return self.send("create-context", contextId=context_id)

    def destroy_context(self, context_id: str) -> dict:
        return self.send("destroy-context", contextId=context_id)

    def load_from_path(self, context_id: str, path: str, alias: str | None = None) -> dict:
        return self.send("load-module-from-path", contextId=context_id, path=str(path), alias=alias)

    def load_from_bytes(self, context_id: str, raw: bytes, name: str | None = None) -> dict:
        return self.send("load-module-from-bytes", contextId=context_id,
                         bytesBase64=base64.b64encode(raw).decode("ascii"), name=name)

    def list_modules(self, context_id: str) -> dict:
        return self.send("list-modules", contextId=context_id)

    def create_instance(self, context_id: str, type_name: str, args: list | None = None) -> dict:
        return self.send("create-instance", contextId=context_id, typeName=type_name,
                         ctorArgsJson=json.dumps(args or []))

    def invoke_static(self, context_id: str, type_name: str, method_name: str,
                      args: list | None = None, timeout_ms: int | None = None) -> dict:
        return self.send("invoke", contextId=context_id, typeName=type_name,
                         methodName=method_name, isStatic=True,
                         argsJson=json.dumps(args or []), timeoutMs=timeout_ms)

    def invoke_instance(self, context_id: str, instance_id: str, method_name: str,
                        args: list | None = None, timeout_ms: int | None = None) -> dict:
        return self.send("invoke", contextId=context_id, instanceId=instance_id,
                         methodName=method_name, isStatic=False,
                         argsJson=json.dumps(args or []), timeoutMs=timeout_ms)

    def release_instance(self, context_id: str, instance_id: str) -> dict:
        return self.send("release-instance", contextId=context_id, instanceId=instance_id)

    def stop_server(self) -> dict:
        return self.send("stop-server")


def main():
    if len(sys.argv) < 2:
        print("usage: bridge_client.py CHANNEL", file=sys.stderr)
        sys.exit(2)
    channel = sys.argv[1]
    auth_token = os.environ.get("BRIDGE_AUTH_TOKEN") or None

    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        try:
            req = json.loads(line)
        except json.JSONDecodeError as e:
            respond({"success": False, "error": f"MalformedRequest: invalid JSON: {e}"})
            continue
        if auth_token is not None and isinstance(req, dict):
            req.setdefault("authToken", auth_token)
        try:
            respond(send_request(channel, req))
        except (OSError, RuntimeError, ValueError) as e:
            respond({"success": False, "error": f"{type(e).__name__}: {e}"})


def respond(obj):
    """Write a JSON response line to stdout."""
    sys.stdout.write(json.dumps(obj) + "\n")
    sys.stdout.flush()


if __name__ == "__main__":
    main()
