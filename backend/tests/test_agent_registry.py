import asyncio

import pytest

from neon_scheduler.core.agent_registry import AgentHandlerRegistry
from neon_scheduler.core.errors import UnknownAgentType
from neon_scheduler.schemas.scheduler import AgentResult


def test_register_and_resolve() -> None:
    registry = AgentHandlerRegistry()

    def handler(config):
        return config

    registry.register("EchoAgent", handler, {"message": {"type": "string"}}, display_name="Echo")

    assert "EchoAgent" in registry
    assert registry.resolve("EchoAgent") is handler
    assert registry.agent_types() == ["EchoAgent"]

    configs = registry.describe()
    assert configs["EchoAgent"].display_name == "Echo"
    assert configs["EchoAgent"].config_schema == {"message": {"type": "string"}}


def test_duplicate_registration_requires_replace() -> None:
    registry = AgentHandlerRegistry()
    registry.register("EchoAgent", lambda config: 1)

    with pytest.raises(ValueError):
        registry.register("EchoAgent", lambda config: 2)

    registry.register("EchoAgent", lambda config: 2, replace=True)
    assert asyncio.run(registry.invoke("EchoAgent", {})).output == 2


def test_unknown_agent_type() -> None:
    registry = AgentHandlerRegistry()

    with pytest.raises(UnknownAgentType):
        registry.resolve("MissingAgent")
    with pytest.raises(UnknownAgentType):
        asyncio.run(registry.invoke("MissingAgent", {}))


def test_invoke_async_and_sync_handlers() -> None:
    registry = AgentHandlerRegistry()

    async def async_handler(config):
        return AgentResult(success=False, error=f"bad {config['key']}")

    def sync_handler(config):
        return {"seen": config["key"]}

    registry.register("AsyncAgent", async_handler)
    registry.register("SyncAgent", sync_handler)

    failed = asyncio.run(registry.invoke("AsyncAgent", {"key": "input"}))
    assert failed.success is False
    assert failed.error == "bad input"

    succeeded = asyncio.run(registry.invoke("SyncAgent", {"key": "value"}))
    assert succeeded.success is True
    assert succeeded.output == {"seen": "value"}


def test_handler_receives_a_copy_of_config() -> None:
    registry = AgentHandlerRegistry()

    def mutating(config):
        config["touched"] = True

    registry.register("MutatingAgent", mutating)
    config = {"key": "value"}
    asyncio.run(registry.invoke("MutatingAgent", config))

    assert config == {"key": "value"}


def test_non_serialisable_output_is_stringified() -> None:
    registry = AgentHandlerRegistry()
    registry.register("ObjectAgent", lambda config: object())

    result = asyncio.run(registry.invoke("ObjectAgent", {}))

    assert isinstance(result.output, str)


def test_handler_exceptions_propagate() -> None:
    registry = AgentHandlerRegistry()

    async def broken(config):
        raise RuntimeError("agent crashed")

    registry.register("BrokenAgent", broken)

    with pytest.raises(RuntimeError, match="agent crashed"):
        asyncio.run(registry.invoke("BrokenAgent", {}))


def test_rejects_invalid_registrations() -> None:
    registry = AgentHandlerRegistry()

    with pytest.raises(ValueError):
        registry.register("", lambda config: None)
    with pytest.raises(TypeError):
        registry.register("NotCallable", "nope")
