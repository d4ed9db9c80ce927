"""Tests for gunicorn configuration."""
from __future__ import annotations

import importlib.util
import os
from types import ModuleType
from unittest.mock import patch


def _load(name: str = "gunicorn_conf") -> ModuleType:
    spec = importlib.util.spec_from_file_location(name, "gunicorn.conf.py")
    assert spec is not None
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)  # type: ignore[union-attr]
    return mod


class TestGunicornConfig:
    def test_defaults(self) -> None:
        mod = _load()
        assert mod.bind == "0.0.0.0:8000"
        assert "uvicorn" in mod.worker_class
        assert mod.proc_name == "storefront_payments"
        assert mod.preload_app is False

    def test_timeout_covers_retried_gateway_calls(self) -> None:
        mod = _load("gunicorn_conf_timeout")
        # 4 attempts of 30s each plus 2 + 4 + 8s of backoff
        assert mod.timeout > 4 * 30 + 14
        assert mod.graceful_timeout >= 30

    def test_env_override_workers(self) -> None:
        with patch.dict(os.environ, {"GUNICORN_WORKERS": "4"}):
            assert _load("gunicorn_conf_custom").workers == 4
