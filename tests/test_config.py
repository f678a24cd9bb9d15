"""Config tests."""

from app.config import Settings, WebhookConfig, get_settings


class TestSettings:
    def test_default_values(self):
        s = Settings()
        assert s.app_name == "Order-Reconciler"
        assert s.debug is False
        assert s.jwt_expire_minutes == 1440

    def test_get_settings_cached(self):
        s1 = get_settings()
        s2 = get_settings()
        assert s1 is s2  # lru_cache

    def test_database_url(self):
        s = Settings()
        assert "postgresql" in s.database_url

    def test_stuck_thresholds(self):
        s = Settings()
        assert s.stuck_order_age_minutes == 30
        assert s.cancelled_refund_window_hours == 24
        assert s.refund_confirmation_timeout_minutes == 60

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("GATEWAY_WEBHOOK_SECRET", "whsec")
        monkeypatch.setenv("STUCK_ORDER_AGE_MINUTES", "90")
        s = Settings()
        assert s.gateway_webhook_secret == "whsec"
        assert s.stuck_order_age_minutes == 90


class TestWebhookConfig:
    def test_from_settings(self):
        s = Settings(carrier_webhook_secret="c", gateway_webhook_secret="g")
        config = WebhookConfig.from_settings(s)
        assert config == WebhookConfig(carrier_secret="c", gateway_secret="g")

    def test_defaults_unsigned(self):
        assert WebhookConfig().carrier_secret == ""
