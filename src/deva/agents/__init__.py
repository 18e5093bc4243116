"""Agent registry.

Agents are resolved once at startup from the plugin manager and looked up
by name afterwards::

    from deva.agents import get_agent

    agent = get_agent("codex")
    command, auth = agent.prepare_launch(["--auth-with", "api-key"], os.environ)
"""

from __future__ import annotations

from typing import Any

from deva.agents.base import AgentModule, BaseAgent
from deva.errors import AgentNotFoundError
from deva.logger import logger

__all__ = ["AgentModule", "BaseAgent", "get_agent", "get_agents", "reset_agents"]

_agents: dict[str, BaseAgent] | None = None


def _is_valid_agent(candidate: Any) -> bool:
    return all(
        [
            bool(getattr(candidate, "name", "")),
            hasattr(candidate, "default_auth"),
            callable(getattr(candidate, "prepare_launch", None)),
            callable(getattr(candidate, "auth_method", None)),
            callable(getattr(candidate, "credential_roots", None)),
        ]
    )


def get_agents() -> dict[str, BaseAgent]:
    """Name -> agent for every registered agent (cached)."""
    global _agents
    if _agents is not None:
        return _agents

    from deva.plugin import get_plugin_manager

    agents: dict[str, BaseAgent] = {}
    for agent in get_plugin_manager().hook.deva_agent():
        if agent is None:
            continue
        if not _is_valid_agent(agent):
            logger.warning("Ignoring invalid plugin agent", agent_type=type(agent).__name__)
            continue
        if agent.name in agents:
            logger.warning("Duplicate agent ignored", agent=agent.name)
            continue
        agents[agent.name] = agent

    # pluggy calls hooks in LIFO registration order; keep the listing stable
    _agents = dict(sorted(agents.items()))
    return _agents


def get_agent(name: str) -> BaseAgent:
    agents = get_agents()
    try:
        return agents[name]
    except KeyError:
        raise AgentNotFoundError(name, list(agents)) from None


def reset_agents() -> None:
    global _agents
    _agents = None
