import pytest

from mesh_dispatch.classifier import ClassifierPolicy
from mesh_dispatch.config import DEFAULT_RETRY_SCHEDULE, CallOptions, DispatcherConfig
from mesh_dispatch.exceptions import InvalidConfigurationError


def test_defaults():
    config = DispatcherConfig()

    assert config.registry_name == "--routes"
    assert config.retry_schedule == DEFAULT_RETRY_SCHEDULE
    assert config.method == "POST"
    assert config.policy == ClassifierPolicy.STANDARD


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("MESH_DISPATCH_REGISTRY_PORT", "8000")
    monkeypatch.setenv("MESH_DISPATCH_RETRY_SCHEDULE", "[1, 5]")
    monkeypatch.setenv("MESH_DISPATCH_POLICY", "redirect")

    config = DispatcherConfig()

    assert config.registry_port == 8000
    assert config.retry_schedule == [1, 5]
    assert config.policy == ClassifierPolicy.REDIRECT


@pytest.mark.parametrize("schedule", [[5, 1], [1, 1], [-1, 2]])
def test_schedule_must_be_increasing_and_non_negative(schedule):
    with pytest.raises(InvalidConfigurationError) as exc_info:
        CallOptions.parse({"retry_schedule": schedule})

    assert exc_info.value.config_key == "retry_schedule"
    assert exc_info.value.noretry


def test_timeout_must_be_positive():
    with pytest.raises(InvalidConfigurationError):
        CallOptions.parse({"timeout": 0})


def test_resolve_fills_defaults():
    config = DispatcherConfig(service_name="accounts", timeout=7)

    resolved = CallOptions().resolve(config)

    assert resolved.method == "POST"
    assert resolved.retry_schedule == DEFAULT_RETRY_SCHEDULE
    assert resolved.timeout == 7
    assert resolved.headers == {"X-Service-Name": "accounts"}
    assert not resolved.once_only


def test_resolve_caller_values_win():
    config = DispatcherConfig(headers={"X-Env": "dev"})

    resolved = CallOptions.parse(
        {"method": "get", "retry_schedule": [], "headers": {"X-Env": "prod"}}
    ).resolve(config, has_payload=True)

    assert resolved.method == "GET"
    assert resolved.retry_schedule == []
    assert resolved.headers["X-Env"] == "prod"
    assert resolved.headers["Content-Type"] == "application/json"


def test_once_only_clears_schedule():
    resolved = CallOptions(once_only=True).resolve(DispatcherConfig())

    assert resolved.retry_schedule == []
    assert resolved.once_only


def test_short_spellings_are_accepted():
    resolved = CallOptions.parse({"retry": []}, once=True).resolve(DispatcherConfig())

    assert resolved.retry_schedule == []
    assert resolved.once_only


def test_short_spelling_in_overrides():
    options = CallOptions.parse({"timeout": 2}, retry=[1, 3])

    assert options.retry_schedule == [1, 3]
    assert options.timeout == 2


@pytest.mark.parametrize("data", [{"retries": [1]}, {"batch": True}])
def test_unknown_option_is_rejected(data):
    with pytest.raises(InvalidConfigurationError) as exc_info:
        CallOptions.parse(data)

    key = next(iter(data))
    assert exc_info.value.config_key == key
    assert f"Unknown call option '{key}'" in str(exc_info.value)


def test_unknown_override_is_rejected():
    with pytest.raises(InvalidConfigurationError):
        CallOptions.parse({}, verb="GET")
