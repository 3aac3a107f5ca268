"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from palacechat.services.settings import Settings


@pytest.fixture
def settings() -> Settings:
    return Settings(api_key="sk-ant-test-key-0000", max_retries=1, retry_min_seconds=0.0, retry_max_seconds=0.0)


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    for name in (
        "PALACECHAT_API_KEY",
        "PALACECHAT_PROVIDER",
        "PALACECHAT_MODEL",
        "ANTHROPIC_API_KEY",
        "OPENAI_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PALACECHAT_LOG_DIR", str(tmp_path / "logs"))
