import logging
from typing import Any, Dict, List, Optional

import httpx

from neon_scheduler.core.errors import HandlerInvocationFailure
from neon_scheduler.schemas.scheduler import AgentResult

logger = logging.getLogger(__name__)


class HttpAgentHandler:
    """Invoke an agent that lives behind an HTTP endpoint.

    The schedule config is sent as the ``context`` of a JSON POST. The request
    itself carries no deadline; the dispatcher cancels it when the schedule's
    timeout elapses.
    """

    def __init__(
        self,
        agent_type: str,
        endpoint_url: Optional[str],
        headers: Optional[Dict[str, str]] = None,
        default_tasks: Optional[List[str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.agent_type = agent_type
        self.endpoint_url = endpoint_url
        self.headers = dict(headers or {})
        self.default_tasks = list(default_tasks or [])
        self._transport = transport

    def _task_for(self, config: Dict[str, Any]) -> Optional[str]:
        task = config.get("task")
        if task:
            return task
        return self.default_tasks[0] if self.default_tasks else None

    async def __call__(self, config: Dict[str, Any]) -> AgentResult:
        if not self.endpoint_url:
            raise HandlerInvocationFailure(f"No endpoint configured for agent type {self.agent_type}")

        data = {
            "agentType": self.agent_type,
            "task": self._task_for(config),
            "context": config,
        }

        try:
            async with httpx.AsyncClient(timeout=None, transport=self._transport) as client:
                response = await client.post(self.endpoint_url, headers=self.headers, json=data)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Agent %s returned HTTP %s", self.agent_type, exc.response.status_code
            )
            raise HandlerInvocationFailure(
                f"Agent {self.agent_type} returned HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("Failed to reach agent %s: %s", self.agent_type, exc)
            raise HandlerInvocationFailure(f"Failed to reach agent {self.agent_type}: {exc}") from exc

        return _parse_response(response)


def _parse_response(response: httpx.Response) -> AgentResult:
    if not response.content:
        return AgentResult(success=True)
    try:
        body = response.json()
    except ValueError:
        return AgentResult(success=True, output=response.text)

    if isinstance(body, dict) and "success" in body:
        return AgentResult(
            success=bool(body.get("success")),
            output=body.get("output", body.get("data")),
            error=body.get("error"),
        )
    return AgentResult(success=True, output=body)
