"""Pluggy hook specifications for deva plugins.

All hooks use the "deva" namespace and are validated by pluggy at
registration time.
"""

from __future__ import annotations

from typing import Any

import pluggy

hookspec = pluggy.HookspecMarker("deva")


class DevaSpec:
    """Hook specifications for deva plugins."""

    @hookspec
    def deva_agent(self) -> Any | None:
        """Provide an agent implementation.

        Agent plugins return an object implementing
        :class:`deva.agents.base.AgentModule` (in practice a
        :class:`~deva.agents.base.BaseAgent` subclass) with:
            - name (str): agent identifier used on the command line
            - default_auth (str): auth method that needs no name suffix
            - prepare_launch(args, environ) -> (LaunchCommand, AuthContext)

        Returns:
            Agent object, or None if this plugin doesn't provide one.
        """
