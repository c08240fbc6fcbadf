"""Error taxonomy shared by the resolver, transport, executor and handlers.

Handlers never let these escape; they are turned into error results at the
tool boundary. ``ConfigError`` is the exception: it is raised while the bridge
is being built and stops startup.
"""


class BridgeError(Exception):
    kind = "error"


class NotFound(BridgeError):
    kind = "not_found"


class Ambiguous(BridgeError):
    kind = "ambiguous"


class TimedOut(BridgeError):
    kind = "timed_out"


class RemoteUnreachable(BridgeError):
    kind = "remote_unreachable"


class IOFailure(BridgeError):
    kind = "io_failure"


class Rejected(BridgeError):
    kind = "rejected"


class UnsupportedTool(BridgeError):
    # a search binary missing on the remote host; grep falls back on it
    kind = "unsupported_tool"


class UnknownTool(BridgeError):
    kind = "unknown_tool"


class ConfigError(BridgeError):
    kind = "config"
