"""
Plugin Registry - Discovery and registration of plugins.

Holds the convergence engine and input plugin classes available to the
application. The application owns a single registry instance; there is no
module-level singleton.
"""

from importlib.metadata import entry_points
from typing import Any, Dict, List, Optional, Type

from plugins.base import logger
from plugins.engines.base import ConvergenceEngine
from plugins.inputs.base import InputPlugin

ENGINE_ENTRY_POINT_GROUP = "groupwise.engines"


class PluginRegistry:
    """
    Registry of engine and input plugin classes.

    Classes are registered once; instances are created and initialized on
    first request and cached.
    """

    def __init__(self):
        self._engines: Dict[str, Type[ConvergenceEngine]] = {}
        self._inputs: Dict[str, Type[InputPlugin]] = {}

        # name -> {"name", "version"} captured at registration
        self._info: Dict[str, Dict[str, str]] = {}

        # Plugin configurations loaded from environment at registration
        self._env_configs: Dict[str, Dict[str, Any]] = {}

        self._engine_instances: Dict[str, ConvergenceEngine] = {}
        self._input_instances: Dict[str, InputPlugin] = {}

    def _register(self, table: Dict[str, Type], plugin_class: Type, kind: str) -> None:
        # Temporary instance to read name/version
        temp_instance = plugin_class()
        name = temp_instance.name
        version = temp_instance.version

        if name in table:
            logger.warning(f"Overwriting existing {kind} plugin: {name}")

        table[name] = plugin_class
        self._info[name] = {"name": name, "version": version}
        self._env_configs[name] = plugin_class.load_config_from_env()
        logger.info(f"Registered {kind} plugin: {name} v{version}")

    def register_engine(self, plugin_class: Type[ConvergenceEngine]) -> None:
        """Register a ConvergenceEngine subclass."""
        self._register(self._engines, plugin_class, "engine")

    def register_input_plugin(self, plugin_class: Type[InputPlugin]) -> None:
        """Register an InputPlugin subclass."""
        self._register(self._inputs, plugin_class, "input")

    def _merged_config(
        self, name: str, config: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        # Explicit configuration wins over values read from the environment
        merged = dict(self._env_configs.get(name, {}))
        merged.update(config or {})
        return merged

    async def get_engine(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> ConvergenceEngine:
        """
        Get an initialized engine instance.

        Args:
            name: The engine name
            config: Configuration merged over the engine's environment config

        Raises:
            ValueError: If the engine is not registered
        """
        if name not in self._engines:
            available = ", ".join(self._engines) or "none"
            raise ValueError(f"Unknown engine: {name}. Available engines: {available}")

        if name not in self._engine_instances:
            engine = self._engines[name]()
            await engine.initialize(self._merged_config(name, config))
            self._engine_instances[name] = engine
            logger.info(f"Initialized engine: {name}")

        return self._engine_instances[name]

    async def get_input_plugin(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> InputPlugin:
        """
        Get an initialized input plugin instance.

        Raises:
            ValueError: If the plugin is not registered
        """
        if name not in self._inputs:
            available = ", ".join(self._inputs) or "none"
            raise ValueError(
                f"Unknown input plugin: {name}. Available plugins: {available}"
            )

        if name not in self._input_instances:
            plugin = self._inputs[name]()
            await plugin.initialize(self._merged_config(name, config))
            self._input_instances[name] = plugin
            logger.info(f"Initialized input plugin: {name}")

        return self._input_instances[name]

    def list_engines(self) -> List[str]:
        return list(self._engines)

    def list_input_plugins(self) -> List[str]:
        return list(self._inputs)

    def has_engine(self, name: str) -> bool:
        return name in self._engines

    def get_plugin_info(self, name: str) -> Optional[Dict[str, str]]:
        """Return {'name', 'version'} for a registered plugin, or None."""
        return self._info.get(name)

    async def close(self) -> None:
        """Close every engine instance created by this registry."""
        for name, engine in self._engine_instances.items():
            try:
                await engine.close()
            except Exception as e:
                logger.error(f"Error closing engine '{name}': {e}")
        self._engine_instances.clear()


def register_builtin_plugins(registry: PluginRegistry) -> None:
    """
    Register the plugins that ship with the controller, then any engines
    installed under the ``groupwise.engines`` entry point group.
    """
    from plugins.engines.github_actions import GitHubActionsEngine
    from plugins.inputs.http import HTTPInputPlugin

    registry.register_engine(GitHubActionsEngine)
    registry.register_input_plugin(HTTPInputPlugin)

    for ep in entry_points(group=ENGINE_ENTRY_POINT_GROUP):
        try:
            registry.register_engine(ep.load())
        except Exception as e:
            logger.warning(f"Could not load engine plugin {ep.name}: {e}")
