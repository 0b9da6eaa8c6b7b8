"""Configuration management for the SuperKagi chat service."""

from __future__ import annotations

import logging
import os
import re
import sys
from string import Template
from typing import Any, Literal, cast

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel

Provider = Literal["local", "openrouter", "nanogpt"]

DEFAULT_MODEL_LOCAL = "llama3"
DEFAULT_MODEL_OPENROUTER = "openrouter/auto"
DEFAULT_MODEL_NANOGPT = "moonshotai/kimi-k2-thinking"
DEFAULT_LOCAL_URL = "http://host.docker.internal:11434/v1"
DEFAULT_NANOGPT_BASE_URL = "https://nano-gpt.com/api/v1"
DEFAULT_KAGI_ENGINE = "cecil"
DEFAULT_APP_ORIGIN = "http://localhost:3545"

_TRUTHY = re.compile(r"^(1|true|yes)$", re.IGNORECASE)


def resolve_provider(value: Any) -> Provider:
    """Map any incoming provider value onto a known provider, defaulting to local."""
    if value == "openrouter" or value == "nanogpt":
        return value
    return "local"


class ChatDefaults(BaseModel):
    """Environment-derived defaults consumed by the provider adapter."""

    provider: Provider = "local"
    model_local: str = DEFAULT_MODEL_LOCAL
    model_openrouter: str = DEFAULT_MODEL_OPENROUTER
    model_nanogpt: str = DEFAULT_MODEL_NANOGPT
    local_url: str = DEFAULT_LOCAL_URL
    system_prompt: str = ""
    deep_search: bool = False
    openrouter_api_key: str = ""
    nanogpt_api_key: str = ""
    nanogpt_base_url: str = DEFAULT_NANOGPT_BASE_URL
    kagi_api_key: str = ""
    kagi_engine: str = DEFAULT_KAGI_ENGINE
    app_origin: str = DEFAULT_APP_ORIGIN

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> ChatDefaults:
        env = os.environ if environ is None else environ
        deep_search = env.get("DEEP_SEARCH", "")
        return cls(
            provider=resolve_provider(env.get("APP_PROVIDER")),
            model_local=env.get("MODEL_LOCAL") or DEFAULT_MODEL_LOCAL,
            model_openrouter=env.get("MODEL_OPENROUTER") or DEFAULT_MODEL_OPENROUTER,
            model_nanogpt=env.get("MODEL_NANOGPT") or DEFAULT_MODEL_NANOGPT,
            local_url=env.get("LOCAL_URL") or DEFAULT_LOCAL_URL,
            system_prompt=env.get("SYSTEM_PROMPT") or "",
            deep_search=bool(_TRUTHY.match(deep_search.strip())) if deep_search else False,
            openrouter_api_key=env.get("OPENROUTER_API_KEY") or "",
            nanogpt_api_key=env.get("NANOGPT_API_KEY") or "",
            nanogpt_base_url=env.get("NANOGPT_BASE_URL") or DEFAULT_NANOGPT_BASE_URL,
            kagi_api_key=env.get("KAGI_API_KEY") or "",
            kagi_engine=env.get("KAGI_SUMMARIZER_ENGINE") or DEFAULT_KAGI_ENGINE,
            app_origin=env.get("APP_ORIGIN") or DEFAULT_APP_ORIGIN,
        )

    def default_model(self, provider: Provider) -> str:
        if provider == "openrouter":
            return self.model_openrouter
        if provider == "nanogpt":
            return self.model_nanogpt
        return self.model_local

    def public_defaults(self) -> dict[str, Any]:
        """Defaults that are safe to hand to the browser (no credentials)."""
        return {
            "provider": self.provider,
            "modelLocal": self.model_local,
            "modelOpenrouter": self.model_openrouter,
            "modelNanogpt": self.model_nanogpt,
            "hasApiKey": bool(self.openrouter_api_key),
            "hasNanoApiKey": bool(self.nanogpt_api_key),
            "localUrl": self.local_url,
            "systemPrompt": self.system_prompt,
            "deepSearch": self.deep_search,
        }


class Configuration:
    """YAML + environment configuration with typed, validated accessors."""

    def __init__(self, overrides: dict[str, Any] | None = None) -> None:
        """Initialize configuration from YAML and environment variables."""
        self.load_env()  # Load .env for API keys
        config = self._load_yaml_config()

        override_path = os.getenv("SUPERKAGI_CONFIG")
        if override_path:
            config = self._deep_merge(config, self.load_config(override_path))
        if overrides:
            config = self._deep_merge(config, overrides)

        self._current_config: dict[str, Any] = config
        self._defaults = ChatDefaults.from_env()

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    def _load_yaml_config(self) -> dict[str, Any]:
        """Load configuration from YAML file."""
        config_path = os.path.join(os.path.dirname(__file__), "config.yaml")
        return self.load_config(config_path)

    @staticmethod
    def load_config(file_path: str) -> dict[str, Any]:
        """Load a YAML configuration file.

        Raises:
            FileNotFoundError: If configuration file doesn't exist.
            ValueError: If the file does not contain a mapping.
        """
        with open(file_path) as file:
            config = yaml.safe_load(file)
            if not isinstance(config, dict):
                raise ValueError("Configuration file must contain a dictionary")
            return cast(dict[str, Any], config)

    def _deep_merge(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(cast(dict[str, Any], result[key]), cast(dict[str, Any], value))
            else:
                result[key] = value

        return result

    def _get_config_value(self, path: list[str], default: Any = None) -> Any:
        """Get a configuration value by path."""
        current: Any = self._current_config
        for key in path:
            if isinstance(current, dict) and key in current:
                current = current[key]
            else:
                return default
        return current

    def get_config_dict(self) -> dict[str, Any]:
        """Get the full configuration dictionary."""
        return self._current_config

    @property
    def defaults(self) -> ChatDefaults:
        """Environment-derived chat defaults."""
        return self._defaults

    def get_chat_service_config(self) -> dict[str, Any]:
        return self._get_config_value(["chat", "service"], {})

    def get_logging_config(self) -> dict[str, Any]:
        return self._get_config_value(["logging"], {})

    def get_server_config(self) -> dict[str, Any]:
        server = self._get_config_value(["chat", "server"], {})
        return {
            "host": server.get("host", "0.0.0.0"),
            "port": int(server.get("port", 3545)),
        }

    def get_max_tool_hops(self) -> int:
        """Get the maximum number of tool rounds allowed per response.

        Returns:
            Maximum number of tool hops (default: 8).
        """
        max_hops = self.get_chat_service_config().get("max_tool_hops", 8)

        if not isinstance(max_hops, int) or isinstance(max_hops, bool) or max_hops < 1:
            raise ValueError("max_tool_hops must be a positive integer")

        return max_hops

    def get_parallel_tool_calls(self) -> bool:
        return bool(self.get_chat_service_config().get("parallel_tool_calls", False))

    def get_streaming_config(self) -> dict[str, Any]:
        """Get SSE emitter configuration with validated defaults."""
        streaming = self._get_config_value(["chat", "streaming"], {})
        ping_interval = float(streaming.get("ping_interval_seconds", 10))
        if ping_interval <= 0:
            raise ValueError("ping_interval_seconds must be positive")
        return {"ping_interval_seconds": ping_interval}

    def get_client_config(self) -> dict[str, Any]:
        """Get stream consumer configuration with validated defaults."""
        client = self._get_config_value(["chat", "client"], {})
        threshold = float(client.get("stall_threshold_seconds", 45))
        deep_threshold = float(client.get("deep_search_stall_threshold_seconds", 120))
        min_period = float(client.get("min_watchdog_period_seconds", 5))

        if threshold <= 0 or deep_threshold <= 0:
            raise ValueError("stall thresholds must be positive")
        if min_period <= 0:
            raise ValueError("min_watchdog_period_seconds must be positive")

        return {
            "server_url": client.get("server_url", "http://localhost:3545"),
            "stall_threshold_seconds": threshold,
            "deep_search_stall_threshold_seconds": deep_threshold,
            "min_watchdog_period_seconds": min_period,
            "fallback_timeout_seconds": float(client.get("fallback_timeout_seconds", 300)),
        }

    def get_llm_config(self) -> dict[str, Any]:
        llm = self._get_config_value(["llm"], {})
        return {
            "app_title": llm.get("app_title", "SuperKagi"),
            "openrouter_base_url": llm.get("openrouter_base_url", "https://openrouter.ai/api/v1"),
            "model_cache_ttl_seconds": float(llm.get("model_cache_ttl_seconds", 300)),
        }

    def get_connection_pool_config(self) -> dict[str, Any]:
        """Get HTTP connection pool configuration for provider clients."""
        pool = self._get_config_value(["llm", "connection_pool"], {})
        return {
            "max_connections": int(pool.get("max_connections", 50)),
            "max_keepalive_connections": int(pool.get("max_keepalive_connections", 10)),
            "keepalive_expiry_seconds": float(pool.get("keepalive_expiry_seconds", 30)),
            "request_timeout_seconds": float(pool.get("request_timeout_seconds", 300)),
        }

    def get_tool_cache_ttl(self) -> float:
        ttl = float(self._get_config_value(["mcp", "tool_cache_ttl_seconds"], 300))
        if ttl <= 0:
            raise ValueError("tool_cache_ttl_seconds must be positive")
        return ttl

    def get_tool_call_timeout(self) -> float:
        return float(self._get_config_value(["mcp", "tool_call_timeout_seconds"], 300))

    def get_mcp_connection_config(self) -> dict[str, Any]:
        """Get MCP connection configuration with validated defaults."""
        connection_config = self._get_config_value(["mcp", "connection"], {})

        max_attempts = connection_config.get("max_reconnect_attempts", 3)
        initial_delay = connection_config.get("initial_reconnect_delay", 1.0)
        max_delay = connection_config.get("max_reconnect_delay", 10.0)
        connection_timeout = connection_config.get("connection_timeout", 30.0)

        if max_attempts < 1:
            raise ValueError("max_reconnect_attempts must be at least 1")
        if initial_delay <= 0:
            raise ValueError("initial_reconnect_delay must be positive")
        if max_delay < initial_delay:
            raise ValueError("max_reconnect_delay must be >= initial_reconnect_delay")
        if connection_timeout <= 0:
            raise ValueError("connection_timeout must be positive")

        return {
            "max_reconnect_attempts": max_attempts,
            "initial_reconnect_delay": initial_delay,
            "max_reconnect_delay": max_delay,
            "connection_timeout": connection_timeout,
        }

    def get_mcp_servers(self) -> dict[str, dict[str, Any]]:
        """Enabled MCP server definitions with ``${VAR}`` placeholders expanded."""
        servers = self._get_config_value(["mcp", "servers"], {})
        substitutions = {
            **os.environ,
            "KAGI_API_KEY": self._defaults.kagi_api_key,
            "KAGI_SUMMARIZER_ENGINE": self._defaults.kagi_engine,
        }

        enabled: dict[str, dict[str, Any]] = {}
        for name, server in servers.items():
            if not isinstance(server, dict) or not server.get("enabled", False):
                logging.info(f"Skipping disabled server: {name}")
                continue
            env = {
                key: Template(str(value)).safe_substitute(substitutions)
                for key, value in (server.get("env") or {}).items()
            }
            enabled[name] = {**server, "env": env}
        return enabled


def show_config_cli() -> None:
    """Print the effective configuration, useful when debugging deployments."""
    try:
        cfg = Configuration()
        yaml.safe_dump(cfg.get_config_dict(), sys.stdout, default_flow_style=False)
    except Exception as e:
        logging.error(f"Error loading configuration: {e}")
        sys.exit(1)
