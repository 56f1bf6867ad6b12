"""
Settings loading and validation
"""
import os

import pytest

from delivery_core.config import Settings
from delivery_core.exceptions import ConfigurationError

SETTING_NAMES = (
    "MONGO_URL", "DB_NAME", "PAYSTACK_SECRET_KEY", "PAYSTACK_PUBLIC_KEY",
    "PAYSTACK_WEBHOOK_SECRET", "TRANSACTION_RETRIES", "LOG_FORMAT",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Private copy of os.environ without our settings; load_dotenv writes into it"""
    monkeypatch.setattr(os, "environ", {k: v for k, v in os.environ.items() if k not in SETTING_NAMES})
    return tmp_path / "missing.env"


class TestSettings:
    def test_defaults(self, clean_env):
        settings = Settings.from_env(clean_env)
        assert settings.mongo_url == "mongodb://localhost:27017/?replicaSet=rs0"
        assert settings.payment_currency == "GHS"
        assert settings.transaction_retries == 3

    def test_webhook_secret_falls_back_to_secret_key(self, clean_env):
        os.environ["PAYSTACK_SECRET_KEY"] = "sk_live_abc"
        assert Settings.from_env(clean_env).paystack_webhook_secret == "sk_live_abc"

    def test_reads_dotenv_file(self, clean_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("PAYSTACK_SECRET_KEY=sk_from_file\nDB_NAME=lpg_staging\n")

        settings = Settings.from_env(env_file)

        assert settings.paystack_secret_key == "sk_from_file"
        assert settings.db_name == "lpg_staging"

    def test_malformed_number(self, clean_env):
        os.environ["TRANSACTION_RETRIES"] = "three"
        with pytest.raises(ConfigurationError):
            Settings.from_env(clean_env)

    def test_validate_lists_every_problem(self):
        with pytest.raises(ConfigurationError) as exc_info:
            Settings(transaction_retries=0, log_format="xml").validate()

        message = str(exc_info.value)
        assert "Paystack configuration is missing" in message
        assert "TRANSACTION_RETRIES must be at least 1" in message
        assert "Unsupported LOG_FORMAT: xml" in message
