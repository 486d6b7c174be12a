import pytest

from portal.v1.core.registries import JobRegistry, Registry, WebhookProviderRegistry
from portal.v1.provisioning.registry_init import register_job_handlers
from portal.v1.webhooks.providers import RazorpayProvider, register_webhook_providers


def test_registry_basic_operations():
    """Test basic registry register, get, list operations."""
    registry = Registry[str]("Test")

    assert registry.list() == []

    registry.register("test_impl", "test_value")
    assert registry.get("test_impl") == "test_value"
    assert registry.has("test_impl")
    assert registry.list() == ["test_impl"]

    with pytest.raises(KeyError, match="No test implementation registered"):
        registry.get("nonexistent")


def test_registry_unregister():
    registry = Registry[str]("Test")
    registry.register("impl", "value")

    registry.unregister("impl")
    registry.unregister("impl")

    assert not registry.has("impl")


def test_frozen_registry_rejects_changes():
    registry = Registry[str]("Test")
    registry.register("impl", "value")
    registry.freeze()

    assert registry.is_frozen()
    with pytest.raises(RuntimeError, match="registry is frozen"):
        registry.register("other", "value")
    with pytest.raises(RuntimeError, match="registry is frozen"):
        registry.unregister("impl")
    assert registry.get("impl") == "value"


def test_register_job_handlers(test_settings):
    registry = JobRegistry()

    register_job_handlers(test_settings, registry=registry)

    assert set(registry.list()) == {"provision", "configure", "deploy"}
    assert registry.get("deploy").job_type == "deploy"
    assert registry.get("provision").next_step == "configure"
    assert registry.get("deploy").next_step is None


def test_register_job_handlers_twice_on_frozen_registry(test_settings):
    registry = JobRegistry()
    register_job_handlers(test_settings, registry=registry)
    registry.freeze()
    original = registry.get("provision")

    register_job_handlers(test_settings, registry=registry)

    assert registry.get("provision") is original


def test_frozen_registry_without_handlers_fails(test_settings):
    registry = JobRegistry()
    registry.freeze()

    with pytest.raises(RuntimeError):
        register_job_handlers(test_settings, registry=registry)


def test_register_webhook_providers(test_settings):
    registry = WebhookProviderRegistry()

    register_webhook_providers(test_settings, registry=registry)

    provider = registry.get("razorpay")
    assert isinstance(provider, RazorpayProvider)
    assert provider.signature_header == "x-razorpay-signature"
