import importlib
import logging
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

# Constants
PLUGIN_FILE_NAME = "plugin.py"
PLUGIN_PACKAGE = "crmdesk.plugins"
PLUGIN_DIR = Path(__file__).resolve().parent.parent / "plugins"

def discover_plugins(plugin_dir: Path = PLUGIN_DIR) -> List[str]:
    """
    Return the names of bundled plugins.
    Expects structure: plugin_dir/my_plugin/plugin.py
    """
    if not plugin_dir.exists():
        logger.warning(f"Plugin directory not found: {plugin_dir}")
        return []
    names = sorted(
        item.name for item in plugin_dir.iterdir()
        if item.is_dir() and (item / PLUGIN_FILE_NAME).exists()
    )
    logger.debug(f"Discovered plugins in {plugin_dir}: {names}")
    return names

def load_single_plugin(name: str, registry_instance=None) -> bool:
    """
    Import one bundled plugin and register its features and blueprint.
    Returns False when the plugin could not be loaded.
    """
    from crmdesk.features.registry import PluginRegistry

    registry = registry_instance if registry_instance is not None else PluginRegistry()
    module_name = f"{PLUGIN_PACKAGE}.{name}.plugin"
    try:
        logger.info(f"Loading plugin '{name}' from {module_name}")
        module = importlib.import_module(module_name)
    except Exception as e:
        logger.error(f"Failed to load plugin '{name}': {e}", exc_info=True)
        return False

    if hasattr(module, 'get_features'):
        for feature in module.get_features() or []:
            try:
                registry.register(feature)
                logger.info(f"Loader: Registered feature '{feature.name}' (Type: {feature.type}) from {name}")
            except Exception as reg_err:
                logger.error(f"Loader: Failed to register feature from {name}: {reg_err}")

    if hasattr(module, 'blueprint'):
        registry.register_blueprint(module.blueprint)
        logger.info(f"Loader: Registered blueprint from {name}")
    return True

def load_plugins(registry_instance=None, names: Optional[List[str]] = None) -> List[str]:
    """
    Main entry point to discover and load all bundled plugins.
    Returns the names of the plugins that loaded.
    """
    loaded = []
    for name in (names if names is not None else discover_plugins()):
        if load_single_plugin(name, registry_instance):
            loaded.append(name)
    logger.info(f"Loaded {len(loaded)} plugins: {loaded}")
    return loaded
