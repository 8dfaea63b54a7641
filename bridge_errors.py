"""Error taxonomy for the bridge.

Components raise these; the request router is the only place that turns them
into wire responses. ``kind`` is the stable name callers match on.
"""


class BridgeError(Exception):
    """Base exception for bridge failures."""

    kind = "BridgeError"

    def describe(self) -> str:
        return f"{self.kind}: {self}"


class Unauthorized(BridgeError):
    kind = "Unauthorized"

    def describe(self) -> str:
        return "Unauthorized"


class MalformedRequest(BridgeError):
    kind = "MalformedRequest"


class UnknownCommand(BridgeError):
    kind = "UnknownCommand"


class DuplicateContext(BridgeError):
    kind = "DuplicateContext"


class ContextNotFound(BridgeError):
    kind = "ContextNotFound"


class FileNotFound(BridgeError):
    kind = "FileNotFound"


class ModuleLoadError(BridgeError):
    """Raised when module source can't be compiled or executed."""

    kind = "ModuleLoadError"


class TypeNotFound(BridgeError):
    kind = "TypeNotFound"


class ConstructorNotFound(BridgeError):
    kind = "ConstructorNotFound"


class MethodNotFound(BridgeError):
    kind = "MethodNotFound"


class InstanceNotFound(BridgeError):
    kind = "InstanceNotFound"


class TeardownFailed(BridgeError):
    kind = "TeardownFailed"


class InvocationTimeout(BridgeError):
    kind = "InvocationTimeout"


class ResultNotEncodable(BridgeError):
    """Raised when a response value can't be written as JSON."""

    kind = "ResultNotEncodable"
