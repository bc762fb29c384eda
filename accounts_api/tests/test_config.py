"""Tests for accounts_api/config.py"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from accounts_api.config import AccountsSettings, PlatformEnv, StripeMode, load_settings


class TestDefaults:
    def test_sandbox_by_default(self) -> None:
        settings = AccountsSettings()
        assert settings.stripe_mode is StripeMode.SANDBOX
        assert settings.platform_env is PlatformEnv.DEV
        assert settings.reject_stale_events is True

    def test_base_url_falls_back_to_localhost(self) -> None:
        settings = AccountsSettings()
        assert settings.base_url == "http://localhost:3000"

    def test_load_settings_reads_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ACCOUNTS_APP_BASE_URL", "https://env.example.com")
        monkeypatch.setenv("ACCOUNTS_REJECT_STALE_EVENTS", "false")
        settings = load_settings()
        assert settings.base_url == "https://env.example.com"
        assert settings.reject_stale_events is False


class TestDerivedUrls:
    def test_urls_built_from_base(self) -> None:
        settings = AccountsSettings(app_base_url="https://app.example.com/")
        assert settings.base_url == "https://app.example.com"
        assert settings.checkout_success_url == "https://app.example.com/app/account?message=checkout-success"
        assert settings.checkout_cancel_url == "https://app.example.com/app/account?message=checkout-canceled"
        assert settings.portal_return_url == "https://app.example.com/app/account"
        assert settings.password_reset_redirect_url == "https://app.example.com/auth/callback?type=recovery"


class TestStripeMode:
    def test_sandbox_values_selected(self) -> None:
        settings = AccountsSettings(
            stripe_sandbox_secret_key="sk_test_1",
            stripe_sandbox_price_id="price_test",
            stripe_sandbox_webhook_secret="whsec_test",
            stripe_live_price_id="price_live",
        )
        assert settings.stripe_secret_key.get_secret_value() == "sk_test_1"
        assert settings.stripe_price_id == "price_test"
        assert settings.stripe_webhook_secret.get_secret_value() == "whsec_test"

    def test_live_values_selected(self) -> None:
        settings = AccountsSettings(
            stripe_mode="live",
            stripe_live_secret_key="sk_live_1",
            stripe_live_price_id="price_live",
            stripe_live_webhook_secret="whsec_live",
            app_base_url="https://app.example.com",
        )
        assert settings.stripe_secret_key.get_secret_value() == "sk_live_1"
        assert settings.stripe_price_id == "price_live"

    def test_live_mode_requires_full_configuration(self) -> None:
        with pytest.raises(ValidationError, match="stripe_live_webhook_secret"):
            AccountsSettings(
                stripe_mode="live",
                stripe_live_secret_key="sk_live_1",
                stripe_live_price_id="price_live",
                app_base_url="https://app.example.com",
            )

    def test_live_mode_requires_base_url(self) -> None:
        with pytest.raises(ValidationError, match="app_base_url"):
            AccountsSettings(
                stripe_mode="live",
                stripe_live_secret_key="sk_live_1",
                stripe_live_price_id="price_live",
                stripe_live_webhook_secret="whsec_live",
            )

    def test_secrets_are_masked(self) -> None:
        settings = AccountsSettings(stripe_sandbox_secret_key="sk_test_secret")
        assert "sk_test_secret" not in repr(settings)


class TestCors:
    def test_wildcard_with_credentials_rejected(self) -> None:
        with pytest.raises(ValidationError, match="wildcard"):
            AccountsSettings(cors_origins=["*"], cors_allow_credentials=True)

    def test_wildcard_without_credentials_allowed(self) -> None:
        settings = AccountsSettings(cors_origins=["*"], cors_allow_credentials=False)
        assert settings.cors_origins == ["*"]


class TestFrozen:
    def test_settings_are_immutable(self) -> None:
        settings = AccountsSettings()
        with pytest.raises(ValidationError):
            settings.debug = True  # type: ignore[misc]
