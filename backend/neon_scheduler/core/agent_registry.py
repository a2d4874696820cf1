from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from threading import RLock
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from neon_scheduler.core.errors import UnknownAgentType
from neon_scheduler.schemas.scheduler import AgentConfig, AgentResult

logger = logging.getLogger(__name__)

AgentHandler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


@dataclass
class AgentDefinition:
    agent_type: str
    handler: AgentHandler
    config_schema: Dict[str, Any] = field(default_factory=dict)
    display_name: Optional[str] = None
    description: str = ""
    icon: Optional[str] = None
    color: Optional[str] = None
    default_tasks: List[str] = field(default_factory=list)

    def to_agent_config(self) -> AgentConfig:
        return AgentConfig(
            display_name=self.display_name or self.agent_type,
            description=self.description,
            icon=self.icon,
            color=self.color,
            default_tasks=list(self.default_tasks),
            config_schema=self.config_schema,
        )


class AgentHandlerRegistry:
    """Capability table mapping agent types to invocable handlers.

    Populated once at startup; the dispatcher resolves handlers from it for
    every invocation.
    """

    def __init__(self) -> None:
        self._agents: Dict[str, AgentDefinition] = {}
        self._lock = RLock()

    def register(
        self,
        agent_type: str,
        handler: AgentHandler,
        config_schema: Optional[Dict[str, Any]] = None,
        *,
        replace: bool = False,
        **metadata: Any,
    ) -> AgentDefinition:
        if not agent_type:
            raise ValueError("agent_type must not be empty")
        if not callable(handler):
            raise TypeError(f"Handler for {agent_type} is not callable")

        definition = AgentDefinition(
            agent_type=agent_type,
            handler=handler,
            config_schema=dict(config_schema or {}),
            **metadata,
        )
        with self._lock:
            if agent_type in self._agents and not replace:
                raise ValueError(f"Agent type {agent_type} is already registered")
            self._agents[agent_type] = definition
        logger.info("Registered agent handler for %s", agent_type)
        return definition

    def get(self, agent_type: str) -> AgentDefinition:
        with self._lock:
            definition = self._agents.get(agent_type)
        if definition is None:
            raise UnknownAgentType(f"Unknown agent type: {agent_type}")
        return definition

    def resolve(self, agent_type: str) -> AgentHandler:
        return self.get(agent_type).handler

    def __contains__(self, agent_type: object) -> bool:
        with self._lock:
            return agent_type in self._agents

    def agent_types(self) -> List[str]:
        with self._lock:
            return sorted(self._agents)

    def describe(self) -> Dict[str, AgentConfig]:
        with self._lock:
            definitions = list(self._agents.values())
        return {d.agent_type: d.to_agent_config() for d in definitions}

    async def invoke(self, agent_type: str, config: Mapping[str, Any]) -> AgentResult:
        """Run the handler for ``agent_type`` and normalise what it returns.

        Coroutine handlers run on the event loop and can be cancelled;
        synchronous handlers run in a worker thread.
        """
        handler = self.resolve(agent_type)
        payload = dict(config)

        if inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(
            getattr(handler, "__call__", None)
        ):
            result = await handler(payload)
        else:
            result = await asyncio.to_thread(handler, payload)
            if inspect.isawaitable(result):
                result = await result

        return _to_agent_result(result)


def _to_agent_result(result: Any) -> AgentResult:
    if isinstance(result, AgentResult):
        return result
    return AgentResult(success=True, output=_json_safe(result))


def _json_safe(value: Any) -> Any:
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)


agent_registry = AgentHandlerRegistry()
