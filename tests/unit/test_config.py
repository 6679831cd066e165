"""Tests for YAML configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from natter.config import DEFAULT_MAX_TOOL_ROUNDS, HELLO_MESSAGE, BackendConfig, ModelFilter, ModelSetting, load_config
from natter.errors import ConfigError

_OPENAI = {"kind": "openai", "alias": "work", "api_key": "sk-test"}


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("OPENAI_API_KEY", "GEMINI_API_KEY", "NATTER_MODEL", "NATTER_LOG_LEVEL", "NATTER_DATA_DIR"):
        monkeypatch.delenv(name, raising=False)


def _write(tmp_path: Path, raw: dict) -> Path:
    raw.setdefault("data_dir", str(tmp_path / "data"))
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(raw))
    return path


class TestLoadConfig:
    def test_minimal(self, tmp_path: Path) -> None:
        config = load_config(_write(tmp_path, {"backend": {"connections": [_OPENAI]}}))

        assert config.general.hello_message == HELLO_MESSAGE
        assert config.backend.max_tool_rounds == DEFAULT_MAX_TOOL_ROUNDS
        assert config.backend.connections[0].alias == "work"
        assert config.backend.connections[0].api_key == "sk-test"
        assert config.data_dir == tmp_path / "data"
        assert config.data_dir.is_dir()
        assert config.storage.sqlite_path == tmp_path / "data" / "chat.db"
        assert config.log.file_path == tmp_path / "data" / "natter.log"
        assert config.log.level == "info"
        assert not config.context.compression.enabled
        assert not config.context.truncation.enabled

    def test_full(self, tmp_path: Path) -> None:
        raw = {
            "general": {"hello_message": "Hey", "show_usage": True},
            "log": {"level": "DEBUG", "file": {"path": str(tmp_path / "x.log"), "append": True}},
            "backend": {
                "default_model": "gpt-4o",
                "timeout_secs": 10,
                "max_tool_rounds": 3,
                "connections": [
                    _OPENAI,
                    {"kind": "Gemini", "api_key": "g", "timeout": 5, "models": ["gemini-2.0-flash"]},
                ],
                "mcp": {
                    "notice_on_call_tool": True,
                    "servers": [
                        {"name": "fs", "command": "npx", "args": ["-y", "server-fs"], "env": {"DEBUG": 1}},
                        {"transport": "sse", "url": "http://localhost:9000/sse"},
                    ],
                },
            },
            "context": {
                "compression": {"enabled": True, "compress_model": "small", "keep_n_messages": 2},
                "truncation": {"enabled": True, "max_tokens": 1000},
            },
        }
        config = load_config(_write(tmp_path, raw))

        assert config.general.hello_message == "Hey"
        assert config.general.show_usage
        assert config.log.level == "debug"
        assert config.log.append
        assert config.log.file_path == tmp_path / "x.log"
        assert config.backend.default_model == "gpt-4o"
        assert config.backend.timeout_secs == 10
        assert config.backend.max_tool_rounds == 3
        gemini = config.backend.connections[1]
        assert gemini.kind == "gemini"
        assert gemini.timeout_secs == 5
        assert gemini.models == ["gemini-2.0-flash"]
        assert config.backend.mcp.notice_on_call_tool
        fs, remote = config.backend.mcp.servers
        assert fs.transport == "stdio"
        assert fs.env == {"DEBUG": "1"}
        assert remote.name == "mcp-1"
        assert config.context.compression.compress_model == "small"
        assert config.context.compression.keep_n_messages == 2
        assert config.context.truncation.max_tokens == 1000

    def test_api_key_from_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GEMINI_API_KEY", "from-env")
        config = load_config(_write(tmp_path, {"backend": {"connections": [{"kind": "gemini"}]}}))
        assert config.backend.connections[0].api_key == "from-env"

    def test_default_model_from_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("NATTER_MODEL", "env-model")
        config = load_config(_write(tmp_path, {"backend": {"connections": [_OPENAI]}}))
        assert config.backend.default_model == "env-model"

    def test_empty_sqlite_path_means_in_memory(self, tmp_path: Path) -> None:
        raw = {"backend": {"connections": [_OPENAI]}, "storage": {"sqlite": {"path": ""}}}
        assert load_config(_write(tmp_path, raw)).storage.sqlite_path is None

    def test_explicit_sqlite_path(self, tmp_path: Path) -> None:
        raw = {"backend": {"connections": [_OPENAI]}, "storage": {"sqlite": {"path": str(tmp_path / "a.db")}}}
        assert load_config(_write(tmp_path, raw)).storage.sqlite_path == tmp_path / "a.db"


class TestConfigErrors:
    def test_no_connections(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="At least one backend connection is required"):
            load_config(_write(tmp_path, {}))

    def test_only_disabled_connections(self, tmp_path: Path) -> None:
        raw = {"backend": {"connections": [{**_OPENAI, "enabled": False}]}}
        with pytest.raises(ConfigError):
            load_config(_write(tmp_path, raw))

    def test_unknown_kind(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="Unsupported backend connection kind: 'ollama'"):
            load_config(_write(tmp_path, {"backend": {"connections": [{"kind": "ollama"}]}}))

    def test_stdio_server_without_command(self, tmp_path: Path) -> None:
        raw = {"backend": {"connections": [_OPENAI], "mcp": {"servers": [{"name": "fs"}]}}}
        with pytest.raises(ConfigError, match="MCP server 'fs' uses the stdio transport but has no 'command'"):
            load_config(_write(tmp_path, raw))

    def test_sse_server_without_url(self, tmp_path: Path) -> None:
        raw = {"backend": {"connections": [_OPENAI], "mcp": {"servers": [{"name": "r", "transport": "sse"}]}}}
        with pytest.raises(ConfigError, match="has no 'url'"):
            load_config(_write(tmp_path, raw))

    def test_bad_model_setting_regex(self, tmp_path: Path) -> None:
        raw = {"backend": {"connections": [_OPENAI], "model_settings": [{"model": {"regex": "gpt-("}}]}}
        with pytest.raises(ConfigError, match="Invalid model_settings regex"):
            load_config(_write(tmp_path, raw))

    def test_negative_tool_rounds(self, tmp_path: Path) -> None:
        raw = {"backend": {"connections": [_OPENAI], "max_tool_rounds": -1}}
        with pytest.raises(ConfigError, match="max_tool_rounds"):
            load_config(_write(tmp_path, raw))

    def test_config_error_is_value_error(self) -> None:
        assert issubclass(ConfigError, ValueError)


class TestEnableMcp:
    def test_no_settings_enables_mcp(self) -> None:
        assert BackendConfig().enable_mcp("gpt-4o")

    def test_first_match_wins(self) -> None:
        config = BackendConfig(
            model_settings=[
                ModelSetting(model=ModelFilter(contains="mini"), enable_mcp=False),
                ModelSetting(model=ModelFilter(regex="^gpt-"), enable_mcp=True),
            ]
        )
        assert not config.enable_mcp("gpt-4o-mini")
        assert config.enable_mcp("gpt-4o")

    def test_equals_is_exact(self) -> None:
        config = BackendConfig(model_settings=[ModelSetting(model=ModelFilter(equals="o1"), enable_mcp=False)])
        assert not config.enable_mcp("o1")
        assert config.enable_mcp("o1-mini")

    def test_empty_filter(self) -> None:
        with pytest.raises(ConfigError, match="model filter needs one of"):
            ModelFilter().build()
