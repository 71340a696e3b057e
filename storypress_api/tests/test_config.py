"""Tests for storypress_api/config.py

Covers:
- load_api_settings reads STORYPRESS_-prefixed environment variables
- Credit prices must be positive
- Lulu token URL derivation
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from storypress_api.config import APISettings, StorageBackend, load_api_settings


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    # No stray .env file from the working directory.
    monkeypatch.chdir(tmp_path)


class TestLoadSettings:
    def test_reads_prefixed_environment(self, monkeypatch):
        monkeypatch.setenv("STORYPRESS_STARTER_CREDITS_CENTS", "50")
        monkeypatch.setenv("STORYPRESS_ADMIN_API_TOKEN", "ops-token")
        monkeypatch.setenv("STORYPRESS_STORAGE_BACKEND", "s3")
        monkeypatch.setenv("STORYPRESS_S3_BUCKET", "storypress-prints")

        settings = load_api_settings()

        assert settings.starter_credits_cents == 50
        assert settings.admin_api_token.get_secret_value() == "ops-token"
        assert settings.storage_backend == StorageBackend.S3
        assert settings.s3_bucket == "storypress-prints"

    def test_defaults(self):
        settings = load_api_settings()

        assert settings.database_url.startswith("sqlite+aiosqlite://")
        assert settings.auto_generate_after_payment is True
        assert settings.admin_api_token.get_secret_value() == ""

    @pytest.mark.parametrize(
        "field", ["starter_credits_cents", "credit_cost_character_cents", "paid_reroll_credits_cents"]
    )
    def test_credit_values_must_be_positive(self, field):
        with pytest.raises(ValidationError):
            APISettings(**{field: 0})


class TestLuluAuthUrl:
    def test_derived_from_base_url(self):
        settings = APISettings(lulu_api_base_url="https://api.lulu.com/")
        assert settings.resolved_lulu_auth_url == (
            "https://api.lulu.com/auth/realms/glasstree/protocol/openid-connect/token"
        )

    def test_explicit_override(self):
        settings = APISettings(lulu_auth_url="https://auth.test/token")
        assert settings.resolved_lulu_auth_url == "https://auth.test/token"
