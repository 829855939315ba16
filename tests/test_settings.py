"""Tests for settings parsing."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from cinerelay.config import Settings


def test_origins_are_stored_without_trailing_slash(make_settings) -> None:
    settings = make_settings(CATALOG_ORIGIN="https://catalog.test/", MEDIA_ORIGIN="https://media.test/")

    assert settings.catalog_origin == "https://catalog.test"
    assert settings.media_origin == "https://media.test"


def test_origins_must_be_absolute() -> None:
    with pytest.raises(ValidationError):
        Settings(MEDIA_ORIGIN="media.test")  # type: ignore[call-arg]


def test_media_marker_uses_host_and_library_root(make_settings) -> None:
    settings = make_settings(MEDIA_BASE_PATH="movies-xxx/jun-24/")

    assert settings.media_base_path == "/movies-xxx/jun-24"
    assert settings.media_marker == "media.test/movies-xxx"
    assert settings.media_base_url == "https://media.test/movies-xxx/jun-24"


def test_media_marker_without_base_path(make_settings) -> None:
    settings = make_settings(MEDIA_BASE_PATH="/")

    assert settings.media_base_path == ""
    assert settings.media_marker == "media.test"


def test_cors_origins_parse_comma_separated_values(make_settings) -> None:
    assert make_settings().allowed_origins == ("*",)
    assert make_settings(CORS_ORIGINS="https://a.test/, https://b.test").allowed_origins == (
        "https://a.test",
        "https://b.test",
    )
    assert make_settings(CORS_ORIGINS=" , ").allowed_origins == ("*",)


def test_environment_defaults_to_production(monkeypatch) -> None:
    monkeypatch.delenv("ENVIRONMENT", raising=False)

    settings = Settings(_env_file=None)  # type: ignore[call-arg]

    assert settings.environment == "production"
