from __future__ import annotations

import importlib.util
from pathlib import Path
from types import ModuleType

import pytest

SCRIPT_PATH = Path(__file__).resolve().parents[2] / "scripts" / "run_due_notifications.py"


def _load_script() -> ModuleType:
    spec = importlib.util.spec_from_file_location("run_due_notifications", SCRIPT_PATH)
    assert spec is not None and spec.loader is not None
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_base_url_uses_default_prefix(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("NOTIFY_API_PREFIX", raising=False)
    script = _load_script()

    assert script._resolve_api_base_url("http://localhost:8000") == "http://localhost:8000/api/v1/notifications"
    assert (
        script._resolve_api_base_url("http://localhost:8000/api/v1/notifications/")
        == "http://localhost:8000/api/v1/notifications"
    )


def test_base_url_follows_configured_prefix(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NOTIFY_API_PREFIX", "/internal/v2")
    script = _load_script()

    assert script._resolve_api_base_url("https://book.example.com/") == (
        "https://book.example.com/internal/v2/notifications"
    )
    assert script._resolve_api_base_url("https://book.example.com/internal/v2/notifications") == (
        "https://book.example.com/internal/v2/notifications"
    )
