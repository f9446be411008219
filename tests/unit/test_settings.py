# tests/unit/test_settings.py
import pytest
from pydantic import ValidationError

from agentflow.config.settings import Settings, get_flow_config, validate_environment


def make_settings(**overrides):
    values = {
        "environment": "production",
        "whatsapp_verify_token": "verify-me",
        "openai_api_key": None,
        "azure_openai_endpoint": None,
        "azure_openai_api_key": None,
        "gemini_api_key": None,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def test_flow_config_per_environment():
    assert get_flow_config("production").max_errors_before_escalation == 5
    assert get_flow_config("staging").max_errors_before_escalation == 8
    assert get_flow_config("unknown").analytics_enabled is True


def test_trusted_ips_are_split():
    assert make_settings(trusted_webhook_ips=" 10.0.0.1, 10.0.0.2 ,").trusted_ips == ["10.0.0.1", "10.0.0.2"]


def test_backends_are_validated():
    with pytest.raises(ValidationError):
        make_settings(rate_limit_backend="memcached")
    with pytest.raises(ValidationError):
        make_settings(persistence_backend="sqlite")


def test_production_requires_an_ai_key():
    with pytest.raises(SystemExit):
        validate_environment(make_settings())

    assert validate_environment(make_settings(gemini_api_key="g-key")).gemini_api_key == "g-key"


def test_production_requires_verify_token():
    with pytest.raises(SystemExit):
        validate_environment(make_settings(whatsapp_verify_token="", openai_api_key="sk-test"))


def test_azure_needs_https_endpoint_and_key():
    assert make_settings(azure_openai_endpoint="https://x.openai.azure.com", azure_openai_api_key="k").uses_azure_openai
    assert not make_settings(azure_openai_endpoint="http://x", azure_openai_api_key="k").uses_azure_openai
