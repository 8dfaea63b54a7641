"""Py-Bridge: local server that loads Python modules and invokes them by name.

A single background listener accepts one connection at a time on a Unix
domain socket, reads one JSON request, answers with one JSON response and
closes the connection.

Architecture:
  caller --JSON/unix socket--> BridgeServer._serve --> RequestRouter
                                                         |
                                                         +--> ContextRegistry / Invoker
"""

import argparse
import os
import socket
import sys
import tempfile
import threading
import time

from dotenv import load_dotenv
load_dotenv()

from bridge_contexts import ContextRegistry
from bridge_invoker import Invoker
from bridge_router import RequestRouter

READ_CHUNK = 32768
MESSAGE_END = b"\n"


def channel_path(channel: str) -> str:
    """Socket path for a channel name; names containing a separator are paths already."""
    if os.sep in channel or "/" in channel:
        return channel
    return os.path.join(tempfile.gettempdir(), f"{channel}.sock")


def read_message(conn: socket.socket) -> bytes:
    """Read until the end-of-message newline or until the peer closes its side."""
    buf = bytearray()
    while True:
        chunk = conn.recv(READ_CHUNK)
        if not chunk:
            break
        end = chunk.find(MESSAGE_END)
        if end >= 0:
            buf += chunk[:end]
            break
        buf += chunk
    return bytes(buf)


def _bind_channel(path: str) -> socket.socket:
    if os.path.exists(path):
        probe = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            probe.connect(path)
        except OSError:
            # Stale socket file left behind by a dead server.
            os.unlink(path)
        else:
            raise OSError(f"channel already in use: {path}")
        finally:
            probe.close()
    listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        listener.bind(path)
        os.chmod(path, 0o600)
        listener.listen(1)
    except OSError:
        listener.close()
        raise
    return listener


class BridgeServer:
    ACCEPT_POLL_SECONDS = 0.5

    def __init__(self, invoke_timeout: float | None = None, retry_delay: float | None = None,
                 stop_join_timeout: float | None = None):
        if invoke_timeout is None:
            invoke_timeout = float(os.environ.get("BRIDGE_INVOKE_TIMEOUT_SECONDS", "30"))
        if retry_delay is None:
            retry_delay = float(os.environ.get("BRIDGE_RETRY_DELAY_SECONDS", "0.1"))
        if stop_join_timeout is None:
            stop_join_timeout = float(os.environ.get("BRIDGE_STOP_JOIN_SECONDS", "2"))
        self.invoke_timeout = invoke_timeout
        self.retry_delay = retry_delay
        self.stop_join_timeout = stop_join_timeout

        self.registry = ContextRegistry()
        self.router: RequestRouter | None = None
        self.channel: str | None = None
        self.socket_path: str | None = None
        self._running = False
        self._thread: threading.Thread | None = None
        self._listener: socket.socket | None = None
        self._control_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._running

    def start(self, channel: str | None = None, auth_token: str | None = None) -> bool:
        """Bind the channel and launch the listener. Already running is a success."""
        with self._control_lock:
            if self._running:
                return True
            channel = channel or os.environ.get("BRIDGE_CHANNEL") or f"pybridge_server_{os.getpid()}"
            if auth_token is None:
                auth_token = os.environ.get("BRIDGE_AUTH_TOKEN")
            # An empty token means no authentication.
            auth_token = auth_token or None
            path = channel_path(channel)
            try:
                listener = _bind_channel(path)
            except OSError as e:
                print(f"[bridge] Error: cannot listen on {path}: {e}", file=sys.stderr, flush=True)
                return False
            listener.settimeout(self.ACCEPT_POLL_SECONDS)

            self.channel = channel
            self.socket_path = path
            self.router = RequestRouter(self.registry, Invoker(self.invoke_timeout), auth_token)
            self._listener = listener
            self._running = True
            self._thread = threading.Thread(target=self._serve, args=(listener, self.router),
                                            name=f"bridge-listener:{channel}", daemon=True)
            self._thread.start()
        print(f"[bridge] listening on {path}", file=sys.stderr, flush=True)
        return True

    def stop(self) -> bool:
        """Stop listening and tear down every context. Safe to call repeatedly."""
        with self._control_lock:
            was_running = self._running
            self._running = False
            listener, self._listener = self._listener, None
            thread = self._thread
            path = self.socket_path
        if listener is not None:
            try:
                listener.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            listener.close()
            if path and os.path.exists(path):
                os.unlink(path)
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(self.stop_join_timeout)
        self.registry.stop_all()
        if was_running:
            print(f"[bridge] stopped {self.channel}", file=sys.stderr, flush=True)
        return True

    def wait(self):
        """Block until the listener exits."""
        while self._thread is not None and self._thread.is_alive():
            self._thread.join(self.ACCEPT_POLL_SECONDS)

    def _serve(self, listener: socket.socket, router: RequestRouter):
        while self._running and self._listener is listener:
            try:
                conn, _ = listener.accept()
            except TimeoutError:
                continue
            except OSError as e:
                if not self._running:
                    break
                print(f"[bridge] accept failed: {e}", file=sys.stderr, flush=True)
                time.sleep(self.retry_delay)
                continue

            try:
                with conn:
                    raw = read_message(conn)
                    response = router.handle_message(raw)
                    conn.sendall(response.encode("utf-8") + MESSAGE_END)
            except OSError as e:
                print(f"[bridge] connection dropped: {e}", file=sys.stderr, flush=True)
                time.sleep(self.retry_delay)
            except (Exception, SystemExit, KeyboardInterrupt) as e:
                print(f"[bridge] request handling failed: {type(e).__name__}: {e}",
                      file=sys.stderr, flush=True)

            if router.stop_requested:
                self.stop()
                break


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Serve the Python module bridge on a local socket.")
    parser.add_argument("--channel", help="channel name or socket path (default: $BRIDGE_CHANNEL)")
    parser.add_argument("--auth-token", help="required request token (default: $BRIDGE_AUTH_TOKEN)")
    args = parser.parse_args(argv)

    server = BridgeServer()
    if not server.start(args.channel, args.auth_token):
        return 1
    try:
        server.wait()
    except KeyboardInterrupt:
        pass
    finally:
        server.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
