"""Fixtures shared by the test suite."""

from __future__ import annotations

import pytest

from superkagi.chat.logging_utils import set_module_features
from superkagi.config import Configuration


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in (
        "APP_PROVIDER",
        "MODEL_LOCAL",
        "MODEL_OPENROUTER",
        "MODEL_NANOGPT",
        "LOCAL_URL",
        "SYSTEM_PROMPT",
        "DEEP_SEARCH",
        "OPENROUTER_API_KEY",
        "NANOGPT_API_KEY",
        "NANOGPT_BASE_URL",
        "SUPERKAGI_CONFIG",
    ):
        monkeypatch.delenv(key, raising=False)
    # keep a developer's .env out of the tests
    monkeypatch.setattr(Configuration, "load_env", staticmethod(lambda: None))
    set_module_features({})


@pytest.fixture
def configuration() -> Configuration:
    return Configuration(overrides={"mcp": {"servers": {"kagi": {"enabled": False}}}})
