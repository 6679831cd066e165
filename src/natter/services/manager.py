"""Routes completions to the connection that serves the requested model."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

from ..config import BackendConfig, ContextConfig
from ..errors import ConfigError, ConnectionExistsError, ModelNotAvailableError, NatterError, NoModelError
from ..models import BackendPrompt, Model
from .backend import Backend, EventSink
from .gemini_backend import GeminiBackend
from .mcp_manager import McpClient
from .openai_backend import OpenAIBackend

logger = logging.getLogger(__name__)

_BACKENDS: dict[str, type[OpenAIBackend] | type[GeminiBackend]] = {
    "openai": OpenAIBackend,
    "gemini": GeminiBackend,
}


class Manager(Backend):
    """Holds one backend per connection and an index of which connection serves each model.

    The index is filled while connections are added at startup and only read
    afterwards.
    """

    def __init__(self) -> None:
        self._connections: dict[str, Backend] = {}
        self._models: dict[str, str] = {}

    def name(self) -> str:
        return "Manager"

    async def add_connection(self, backend: Backend) -> None:
        alias = backend.name()
        if alias in self._connections:
            raise ConnectionExistsError(alias)

        try:
            models = await backend.list_models()
        except Exception as e:
            raise NatterError(f"listing models backend {alias}: {e}") from e

        for model in models:
            previous = self._models.get(model.id)
            if previous is not None:
                logger.warning("Model '%s' served by '%s' is now routed to '%s'", model.id, previous, alias)
            self._models[model.id] = alias
        self._connections[alias] = backend
        logger.info("Connection '%s' added with %d models", alias, len(models))

    def get_connection(self, model_id: str) -> Backend | None:
        alias = self._models.get(model_id)
        return self._connections.get(alias) if alias is not None else None

    async def list_models(self) -> list[Model]:
        return [Model(id=model_id, provider=alias) for model_id, alias in sorted(self._models.items())]

    async def get_completion(
        self,
        prompt: BackendPrompt,
        sink: EventSink,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        if not prompt.model:
            raise NoModelError()
        backend = self.get_connection(prompt.model)
        if backend is None:
            raise ModelNotAvailableError(prompt.model)
        await backend.get_completion(prompt, sink, cancel_event)


async def new_manager(
    backend_config: BackendConfig,
    context_config: ContextConfig | None = None,
    mcp: McpClient | None = None,
) -> Manager:
    """Build a Manager from the enabled connections in ``backend_config``."""
    context_config = context_config or ContextConfig()
    connections = [c for c in backend_config.connections if c.enabled]
    if not connections:
        raise ConfigError("No backend connections configured")

    manager = Manager()
    for connection in connections:
        if connection.timeout_secs is None and backend_config.timeout_secs is not None:
            connection = replace(connection, timeout_secs=backend_config.timeout_secs)
        backend_cls = _BACKENDS.get(connection.kind)
        if backend_cls is None:
            raise ConfigError(f"Unsupported backend connection kind: {connection.kind}")
        backend = backend_cls(
            connection,
            mcp=mcp,
            backend_config=backend_config,
            truncation=context_config.truncation,
        )
        try:
            await manager.add_connection(backend)
        except NatterError as e:
            raise NatterError(f"adding connection: {backend.name()}: {e}") from e
    return manager
