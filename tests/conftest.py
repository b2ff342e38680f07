import logging
from pathlib import Path

import pytest
import structlog

import aido.config as config_module
from aido.config import Config


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path: Path):
    """Keep every test away from the user's ~/.aido and quiet the logs."""
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "home" / "config.yaml")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    cfg = Config()
    cfg.conversation.path = str(tmp_path / "home" / "conversations.db")
    config_module.set_config(cfg)
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(logging.CRITICAL),
        cache_logger_on_first_use=False,
    )
    yield
    config_module._config = None
    structlog.reset_defaults()
