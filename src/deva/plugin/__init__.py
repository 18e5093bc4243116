"""Plugin system for deva.

Agents are provided through the ``deva_agent`` hook.  The built-in agents
are registered from a static table; third-party agents register through
the ``deva`` entry-point group in their own ``pyproject.toml``.

Usage:
    from deva.plugin import get_plugin_manager

    pm = get_plugin_manager()
    agents = pm.hook.deva_agent()
"""

from __future__ import annotations

import importlib

import pluggy

from deva.logger import logger
from deva.plugin.hookspecs import DevaSpec

__all__ = [
    "get_plugin_manager",
]

# Each entry: (module_path, class_name, plugin_key)
_BUILTIN_PLUGIN_SPECS: list[tuple[str, str, str]] = [
    ("deva.agents.claude", "ClaudeAgentPlugin", "claude"),
    ("deva.agents.codex", "CodexAgentPlugin", "codex"),
    ("deva.agents.gemini", "GeminiAgentPlugin", "gemini"),
]


def get_plugin_manager() -> pluggy.PluginManager:
    """Create and configure the plugin manager.

    Registers the built-in agents, then third-party plugins from entry
    points.
    """
    pm = pluggy.PluginManager("deva")
    pm.add_hookspecs(DevaSpec)

    for module_path, class_name, key in _BUILTIN_PLUGIN_SPECS:
        mod = importlib.import_module(module_path)
        pm.register(getattr(mod, class_name)(), name=f"builtin-{key}")
        logger.debug("Registered built-in plugin", name=key)

    discovered = pm.load_setuptools_entrypoints("deva")
    if discovered:
        logger.info("Discovered third-party plugins", count=discovered)

    # Entry points sometimes name the plugin class instead of an instance
    for plugin in list(pm.get_plugins()):
        if isinstance(plugin, type):
            plugin_name = pm.get_name(plugin) or plugin.__name__
            pm.unregister(plugin=plugin)
            logger.warning("Unregistered invalid class-based plugin object", plugin=plugin_name)

    logger.debug("Plugin manager ready", plugins=[pm.get_name(p) for p in pm.get_plugins()])
    return pm
