import logging
from typing import Optional

import httpx

from neon_scheduler.agents.http_agent import HttpAgentHandler
from neon_scheduler.core.agent_registry import AgentHandlerRegistry
from neon_scheduler.core.config import Settings, get_settings
from neon_scheduler.services.schedule_presets import AGENT_METADATA

logger = logging.getLogger(__name__)


def register_builtin_agents(
    registry: AgentHandlerRegistry,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> None:
    """Bind the built-in agent types to their HTTP endpoints.

    Types that are already registered are left alone so embedders can supply
    in-process handlers before startup.
    """
    settings = settings or get_settings()
    for agent_type, metadata in AGENT_METADATA.items():
        if agent_type in registry:
            logger.debug("Agent type %s already registered; skipping built-in", agent_type)
            continue

        endpoint_url = settings.agent_endpoints.get(agent_type)
        if not endpoint_url:
            logger.warning("No endpoint configured for %s; invocations will fail", agent_type)

        handler = HttpAgentHandler(
            agent_type=agent_type,
            endpoint_url=endpoint_url,
            headers=settings.agent_endpoint_headers,
            default_tasks=metadata["default_tasks"],
            transport=transport,
        )
        registry.register(agent_type, handler, **metadata)
