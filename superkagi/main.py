"""
Main application entry point - HTTP/SSE server with YAML-driven logging.
"""

from __future__ import annotations

import logging
from typing import Any

import uvicorn

from superkagi.chat.logging_utils import set_module_features
from superkagi.config import Configuration
from superkagi.server import ChatServer


def _configure_advanced_logging(logging_config: dict[str, Any]) -> None:
    """
    Hierarchical logger levels plus per-module feature flags.

    Levels are set on parent loggers so child modules inherit them; feature
    flags are stored for ``should_log_feature`` lookups at runtime.
    """
    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }

    global_level = logging_config.get("level", "WARNING")
    logging.getLogger().setLevel(level_map.get(global_level, logging.WARNING))

    module_logger_map = {
        "chat": {
            "loggers": ["superkagi.chat", "superkagi.server", "superkagi.consumer"],
            "default_level": "INFO",
        },
        "connection_pool": {
            "loggers": ["superkagi.connection_pool", "httpx", "httpcore"],
            "default_level": "WARNING",
        },
        "mcp": {
            "loggers": ["mcp", "superkagi.mcp", "superkagi.clients.mcp_client", "superkagi.tool_catalog"],
            "default_level": "INFO",
        },
    }

    features: dict[str, dict[str, bool]] = {}
    for module_name, module_config in logging_config.get("modules", {}).items():
        if not isinstance(module_config, dict):
            continue

        module_level = module_config.get(
            "level", module_logger_map.get(module_name, {}).get("default_level", global_level)
        )
        level_value = level_map.get(module_level, logging.WARNING)
        for logger_name in module_logger_map.get(module_name, {}).get("loggers", []):
            logging.getLogger(logger_name).setLevel(level_value)

        features[module_name] = module_config.get("enable_features", {})

    set_module_features(features)


def configure_logging(config: Configuration) -> None:
    logging_config = config.get_logging_config()
    logging.basicConfig(
        level=logging.INFO,
        format=logging_config.get("format", "%(asctime)s - %(levelname)s - %(message)s"),
    )
    _configure_advanced_logging(logging_config)


def main() -> None:
    """Start the HTTP server."""
    config = Configuration()
    configure_logging(config)

    server_config = config.get_server_config()
    server = ChatServer(config)
    logging.info("Starting SuperKagi server on %s:%d", server_config["host"], server_config["port"])

    uvicorn.run(
        server.app,
        host=server_config["host"],
        port=server_config["port"],
        log_level="info",
        timeout_keep_alive=75,
    )


if __name__ == "__main__":
    main()
