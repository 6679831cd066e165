"""Configuration loader: YAML file with environment variable fallbacks."""

from __future__ import annotations

import os
import re
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

HELLO_MESSAGE = "Hello! How can I help you? 😊"
DEFAULT_TIMEOUT_SECS = 60
DEFAULT_MAX_TOOL_ROUNDS = 50
MCP_TIMEOUT_SECS = 30

# Compression defaults
MAX_CONTEXT_LENGTH = 64 * 1024
MAX_CONVO_LENGTH = 50
KEEP_N_MESSAGES = 5

_DEFAULT_DATA_DIR = Path.home() / ".natter"

_API_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
}


@dataclass
class GeneralConfig:
    hello_message: str = HELLO_MESSAGE
    show_usage: bool = False


@dataclass
class LogConfig:
    level: str = "info"
    file_path: Path = field(default_factory=lambda: _DEFAULT_DATA_DIR / "natter.log")
    append: bool = False


@dataclass
class ConnectionConfig:
    kind: str  # "openai" or "gemini"
    alias: str | None = None
    endpoint: str | None = None
    api_key: str | None = None
    enabled: bool = True
    timeout_secs: int | None = None
    models: list[str] = field(default_factory=list)
    max_output_tokens: int | None = None


@dataclass
class ModelFilter:
    contains: str | None = None
    equals: str | None = None
    regex: str | None = None

    def build(self) -> re.Pattern[str]:
        if self.contains is not None:
            return re.compile(f".*{re.escape(self.contains)}.*")
        if self.equals is not None:
            return re.compile(f"^{re.escape(self.equals)}$")
        if self.regex is not None:
            return re.compile(self.regex)
        raise ConfigError("model filter needs one of 'contains', 'equals' or 'regex'")


@dataclass
class ModelSetting:
    model: ModelFilter
    enable_mcp: bool = True

    def matches(self, model_id: str) -> bool:
        return self.model.build().search(model_id) is not None


@dataclass
class McpServerConfig:
    name: str
    transport: str  # "stdio" or "sse"
    command: str | None = None
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    url: str | None = None
    enabled: bool = True
    timeout_secs: int = MCP_TIMEOUT_SECS


@dataclass
class McpConfig:
    notice_on_call_tool: bool = False
    servers: list[McpServerConfig] = field(default_factory=list)


@dataclass
class BackendConfig:
    default_model: str | None = None
    timeout_secs: int | None = DEFAULT_TIMEOUT_SECS
    max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS
    connections: list[ConnectionConfig] = field(default_factory=list)
    model_settings: list[ModelSetting] = field(default_factory=list)
    mcp: McpConfig = field(default_factory=McpConfig)

    def enable_mcp(self, model_id: str) -> bool:
        """First matching model setting wins; MCP is on when nothing matches."""
        for setting in self.model_settings:
            if setting.matches(model_id):
                return setting.enable_mcp
        return True


@dataclass
class CompressionConfig:
    enabled: bool = False
    compress_model: str | None = None
    max_tokens: int = MAX_CONTEXT_LENGTH
    max_messages: int = MAX_CONVO_LENGTH
    keep_n_messages: int = KEEP_N_MESSAGES


@dataclass
class TruncationConfig:
    enabled: bool = False
    max_tokens: int = MAX_CONTEXT_LENGTH


@dataclass
class ContextConfig:
    compression: CompressionConfig = field(default_factory=CompressionConfig)
    truncation: TruncationConfig = field(default_factory=TruncationConfig)


@dataclass
class StorageConfig:
    # None means an in-memory database
    sqlite_path: Path | None = field(default_factory=lambda: _DEFAULT_DATA_DIR / "chat.db")


@dataclass
class AppConfig:
    backend: BackendConfig
    general: GeneralConfig = field(default_factory=GeneralConfig)
    log: LogConfig = field(default_factory=LogConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    data_dir: Path = field(default_factory=lambda: _DEFAULT_DATA_DIR)


def _get_config_path(data_dir: Path | None = None) -> Path:
    if data_dir:
        return data_dir / "config.yaml"
    env_path = os.environ.get("NATTER_CONFIG")
    if env_path:
        return Path(os.path.expanduser(env_path))
    return _DEFAULT_DATA_DIR / "config.yaml"


def _as_bool(value: Any) -> bool:
    return str(value).lower() not in ("false", "0", "no")


def _expand_path(value: str) -> Path:
    return Path(os.path.expanduser(os.path.expandvars(value)))


def _parse_connection(raw: dict[str, Any]) -> ConnectionConfig:
    kind = str(raw.get("kind", "")).lower()
    if kind not in _API_KEY_ENV:
        raise ConfigError(f"Unsupported backend connection kind: {raw.get('kind')!r} (expected 'openai' or 'gemini')")
    api_key = raw.get("api_key") or os.environ.get(_API_KEY_ENV[kind])
    timeout = raw.get("timeout_secs", raw.get("timeout"))
    max_output = raw.get("max_output_tokens")
    return ConnectionConfig(
        kind=kind,
        alias=raw.get("alias"),
        endpoint=raw.get("endpoint"),
        api_key=api_key,
        enabled=_as_bool(raw.get("enabled", True)),
        timeout_secs=int(timeout) if timeout is not None else None,
        models=list(raw.get("models") or []),
        max_output_tokens=int(max_output) if max_output is not None else None,
    )


def _parse_model_setting(raw: dict[str, Any]) -> ModelSetting:
    model_raw = raw.get("model") or {}
    model_filter = ModelFilter(
        contains=model_raw.get("contains"),
        equals=model_raw.get("equals"),
        regex=model_raw.get("regex"),
    )
    try:
        model_filter.build()
    except re.error as e:
        raise ConfigError(f"Invalid model_settings regex {model_filter.regex!r}: {e}") from e
    return ModelSetting(model=model_filter, enable_mcp=_as_bool(raw.get("enable_mcp", True)))


def _parse_mcp_server(raw: dict[str, Any], position: int) -> McpServerConfig:
    transport = raw.get("transport", "stdio")
    name = raw.get("name") or f"mcp-{position}"
    if transport == "stdio" and not raw.get("command"):
        raise ConfigError(f"MCP server '{name}' uses the stdio transport but has no 'command'")
    if transport == "sse" and not raw.get("url"):
        raise ConfigError(f"MCP server '{name}' uses the sse transport but has no 'url'")
    if transport not in ("stdio", "sse"):
        raise ConfigError(f"MCP server '{name}' has unsupported transport: {transport}")
    return McpServerConfig(
        name=name,
        transport=transport,
        command=raw.get("command"),
        args=list(raw.get("args") or []),
        env={str(k): str(v) for k, v in (raw.get("env") or {}).items()},
        url=raw.get("url"),
        enabled=_as_bool(raw.get("enabled", True)),
        timeout_secs=int(raw.get("timeout_secs", MCP_TIMEOUT_SECS)),
    )


def load_config(config_path: Path | None = None) -> AppConfig:
    raw: dict[str, Any] = {}
    path = config_path or _get_config_path()

    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}

    general_raw = raw.get("general", {})
    general = GeneralConfig(
        hello_message=general_raw.get("hello_message") or HELLO_MESSAGE,
        show_usage=_as_bool(general_raw.get("show_usage", False)),
    )

    data_dir = _expand_path(raw.get("data_dir") or os.environ.get("NATTER_DATA_DIR", str(_DEFAULT_DATA_DIR)))

    log_raw = raw.get("log", {})
    log_file_raw = log_raw.get("file", {})
    log = LogConfig(
        level=(log_raw.get("level") or os.environ.get("NATTER_LOG_LEVEL", "info")).lower(),
        file_path=_expand_path(log_file_raw["path"]) if log_file_raw.get("path") else data_dir / "natter.log",
        append=_as_bool(log_file_raw.get("append", False)),
    )

    backend_raw = raw.get("backend", {})
    connections = [_parse_connection(c) for c in backend_raw.get("connections", [])]
    if not any(c.enabled for c in connections):
        raise ConfigError(
            "At least one backend connection is required. Add an entry under "
            f"'backend.connections' in config.yaml ({path})."
        )
    mcp_raw = backend_raw.get("mcp", {})
    mcp = McpConfig(
        notice_on_call_tool=_as_bool(mcp_raw.get("notice_on_call_tool", False)),
        servers=[_parse_mcp_server(s, i) for i, s in enumerate(mcp_raw.get("servers", []))],
    )
    timeout_raw = backend_raw.get("timeout_secs", DEFAULT_TIMEOUT_SECS)
    backend = BackendConfig(
        default_model=backend_raw.get("default_model") or os.environ.get("NATTER_MODEL") or None,
        timeout_secs=int(timeout_raw) if timeout_raw is not None else None,
        max_tool_rounds=int(backend_raw.get("max_tool_rounds", DEFAULT_MAX_TOOL_ROUNDS)),
        connections=connections,
        model_settings=[_parse_model_setting(s) for s in backend_raw.get("model_settings", [])],
        mcp=mcp,
    )
    if backend.max_tool_rounds < 0:
        raise ConfigError("backend.max_tool_rounds must not be negative")

    context_raw = raw.get("context", {})
    compression_raw = context_raw.get("compression", {})
    truncation_raw = context_raw.get("truncation", {})
    context = ContextConfig(
        compression=CompressionConfig(
            enabled=_as_bool(compression_raw.get("enabled", False)),
            compress_model=compression_raw.get("compress_model") or None,
            max_tokens=int(compression_raw.get("max_tokens", MAX_CONTEXT_LENGTH)),
            max_messages=int(compression_raw.get("max_messages", MAX_CONVO_LENGTH)),
            keep_n_messages=int(compression_raw.get("keep_n_messages", KEEP_N_MESSAGES)),
        ),
        truncation=TruncationConfig(
            enabled=_as_bool(truncation_raw.get("enabled", False)),
            max_tokens=int(truncation_raw.get("max_tokens", MAX_CONTEXT_LENGTH)),
        ),
    )

    sqlite_raw = raw.get("storage", {}).get("sqlite", {})
    if "path" in sqlite_raw:
        sqlite_path = _expand_path(sqlite_raw["path"]) if sqlite_raw["path"] else None
    else:
        sqlite_path = data_dir / "chat.db"
    storage = StorageConfig(sqlite_path=sqlite_path)

    data_dir.mkdir(parents=True, exist_ok=True)
    try:
        data_dir.chmod(stat.S_IRWXU)  # 0700
        if path.exists():
            path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0600
    except OSError:
        pass  # May fail on Windows or non-owned files

    return AppConfig(
        backend=backend,
        general=general,
        log=log,
        context=context,
        storage=storage,
        data_dir=data_dir,
    )
