from datetime import timedelta
from unittest.mock import patch

import pytest

import config
from app import create_app
from blueprints.payments_helpers import MpesaClient
from config import TestConfig
from exceptions import ConfigurationError
from models import AvailableTask


class ProductionMissingCredentials(TestConfig):
    FLASK_ENV = "production"
    MPESA_B2C_SECURITY_CREDENTIAL = None


class ProductionComplete(TestConfig):
    FLASK_ENV = "production"


class TestCreateApp:

    def test_production_requires_credentials(self):
        with pytest.raises(ConfigurationError) as exc:
            create_app(ProductionMissingCredentials)
        assert "MPESA_B2C_SECURITY_CREDENTIAL" in exc.value.message

    def test_production_with_credentials(self):
        app = create_app(ProductionComplete)
        assert isinstance(app.extensions["mpesa"], MpesaClient)

    def test_gateway_built_from_config(self):
        app = create_app(TestConfig)
        gateway = app.extensions["mpesa"]
        assert gateway.business_short_code == "174379"
        assert gateway.timeout == TestConfig.MPESA_TIMEOUT_SECONDS


class TestActivationFee:

    @pytest.mark.parametrize("raw,expected", [
        (None, 500), ("", 500), ("750", 750), ("abc", 500), ("0", 500), ("-20", 500),
    ])
    def test_fallback(self, monkeypatch, raw, expected):
        if raw is None:
            monkeypatch.delenv("MPESA_ACTIVATION_FEE", raising=False)
        else:
            monkeypatch.setenv("MPESA_ACTIVATION_FEE", raw)
        assert config._activation_fee() == expected


class TestCommands:

    def test_seed_tasks(self, app):
        result = app.test_cli_runner().invoke(args=["seed-tasks"])
        assert "Added 8 available tasks." in result.output
        assert AvailableTask.query.count() == 8

    def test_reconcile_activations(self, app):
        with patch("blueprints.activation_helpers.ActivationProcessor.reconcile_stale_activations",
                   return_value={"checked": 0}) as reconcile:
            result = app.test_cli_runner().invoke(args=["reconcile-activations", "--minutes", "15"])
        reconcile.assert_called_once_with(timedelta(minutes=15))
        assert "checked=0" in result.output
