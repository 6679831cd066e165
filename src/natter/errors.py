"""Exception types raised by the completion engine."""

from __future__ import annotations


class NatterError(Exception):
    """Base class for every error raised by natter."""


class ConfigError(NatterError, ValueError):
    pass


class TransportError(NatterError):
    """The request could not be sent or the response could not be read."""


class ProviderError(NatterError):
    """A provider answered with a non-2xx status and an error envelope."""

    def __init__(
        self,
        provider: str,
        http_code: int,
        message: str,
        type: str | None = None,
        param: str | None = None,
        code: str | int | None = None,
    ) -> None:
        self.provider = provider
        self.http_code = http_code
        self.message = message
        self.type = type
        self.param = param
        self.code = code
        super().__init__(f"{provider} error ({http_code}): {message}")


class MalformedStreamError(NatterError):
    pass


class RoutingError(NatterError):
    pass


class NoModelError(RoutingError):
    def __init__(self) -> None:
        super().__init__("no model is set")


class ModelNotAvailableError(RoutingError):
    def __init__(self, model: str) -> None:
        self.model = model
        super().__init__(f"model is not available: {model}")


class ConnectionExistsError(RoutingError):
    def __init__(self, alias: str) -> None:
        self.alias = alias
        super().__init__(f"connection {alias} already exists")


class ToolError(NatterError):
    pass


class McpNotSetError(ToolError):
    def __init__(self) -> None:
        super().__init__("MCP is not set")


class ToolNotFoundError(ToolError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"tool {name} not found")


class ToolDepthExceededError(ToolError):
    def __init__(self, max_rounds: int) -> None:
        self.max_rounds = max_rounds
        super().__init__(f"tool-call depth exceeded: model still requested tools after {max_rounds} rounds")


class CompletionCancelled(NatterError):
    def __init__(self) -> None:
        super().__init__("completion cancelled")

