"""Pytest configuration and test helpers."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable

import pytest


# Ensure the package is importable when running tests without an editable
# install; ``cinerelay`` sits at the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from cinerelay.config import Settings  # noqa: E402

CATALOG_ORIGIN = "https://catalog.test"
MEDIA_ORIGIN = "https://media.test"


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    """Return a factory for settings pointed at fake upstreams."""

    def factory(**overrides: Any) -> Settings:
        base = {
            "ENVIRONMENT": "development",
            "CATALOG_ORIGIN": CATALOG_ORIGIN,
            "MEDIA_ORIGIN": MEDIA_ORIGIN,
            "MEDIA_BASE_PATH": "/movies-xxx/jun-24",
            "UPSTREAM_MODE": "direct",
            "UPSTREAM_PROXY_URL": None,
            "RELAY_MODE": "stream",
            "RELAY_SIGNING_SECRET": None,
            "CORS_ORIGINS": "*",
            "OPENAI_API_KEY": None,
        }
        base.update(overrides)
        return Settings(**base)  # type: ignore[arg-type]

    return factory


@pytest.fixture
def settings(make_settings: Callable[..., Settings]) -> Settings:
    return make_settings()
