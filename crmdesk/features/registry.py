from enum import Enum, auto
from typing import Callable, List, Optional, Any, Dict
import logging

logger = logging.getLogger(__name__)

class FeatureState(Enum):
    STANDARD = auto()
    EXPERIMENTAL = auto()

class FeatureType(Enum):
    ALGORITHM = auto() # Text transformation applied before rendering
    ENDPOINT = auto() # HTTP surface contributed by a plugin

class Feature:
    def __init__(self, name: str, handler: Optional[Callable[[str], Any]], state: FeatureState, feature_type: FeatureType = FeatureType.ALGORITHM, meta: Dict = None):
        self.name = name
        self.handler = handler
        self.state = state
        self.type = feature_type
        self.meta = meta or {}

    def __repr__(self):
        return f"<Feature {self.name} ({self.type.name}, {self.state.name})>"

class Pipeline:
    """
    A sequence of text steps executed in order.
    Used to clean agent output before it is rendered.
    """
    def __init__(self, name: str):
        self.name = name
        self._steps: List[Callable[[str], str]] = []

    def add_step(self, handler: Callable[[str], str]):
        self._steps.append(handler)

    def run(self, content: str) -> str:
        """Execute the pipeline on the content."""
        for step in self._steps:
            try:
                content = step(content)
            except Exception as e:
                # A broken step must not lose the document; keep the partial content
                logger.error(f"Pipeline {self.name} step {getattr(step, '__name__', 'unknown')} failed: {e}")
        return content

    def __iter__(self):
        return iter(self._steps)

    def __len__(self):
        return len(self._steps)

class PluginRegistry:
    """
    Singleton Registry holding features and Flask blueprints contributed by plugins.
    """
    _instance = None
    _plugins: List[Any] = []
    _blueprints: List[Any] = []

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(PluginRegistry, cls).__new__(cls)
            cls._instance._plugins = []
            cls._instance._blueprints = []
        return cls._instance

    def register(self, feature: Any):
        """
        Register a feature. Features are keyed by name: registering a name
        again replaces the earlier entry in place.
        """
        name = getattr(feature, 'name', None)
        for index, existing in enumerate(self._plugins):
            if existing is feature or (name is not None and getattr(existing, 'name', None) == name):
                self._plugins[index] = feature
                logger.debug(f"PluginRegistry: Replaced {name or feature}")
                return
        self._plugins.append(feature)
        logger.info(f"PluginRegistry: Registered {feature}")

    def get_all_plugins(self) -> List[Any]:
        return list(self._plugins)

    def register_blueprint(self, bp: Any):
        """Register a Flask Blueprint, replacing an earlier one with the same name."""
        for index, existing in enumerate(self._blueprints):
            if existing.name == bp.name:
                self._blueprints[index] = bp
                return
        self._blueprints.append(bp)
        logger.info(f"PluginRegistry: Registered blueprint {bp.name}")

    def get_blueprints(self) -> List[Any]:
        return list(self._blueprints)

    def register_blueprints(self, app):
        """Register all collected blueprints with the Flask app."""
        for bp in self._blueprints:
            if bp.name in app.blueprints:
                continue
            try:
                app.register_blueprint(bp)
                logger.info(f"Registered blueprint: {bp.name}")
            except Exception as e:
                logger.error(f"Failed to register blueprint {bp.name}: {e}")

class FeatureManager:
    """
    Facade that aggregates core features and plugin features and builds Pipelines.
    """
    def __init__(self, registry: Optional[Any] = None):
        self._core: List[Feature] = []
        self._features: List[Feature] = []
        self._registry = registry

    def register(self, feature: Feature):
        """Register a core feature. Core features run before plugin features."""
        self._core.append(feature)
        self._features.append(feature)

    def refresh(self):
        """
        Rebuild the feature list from core features plus the registry.
        A plugin feature with the same name as an existing one replaces it.
        """
        self._features = list(self._core)
        if not self._registry:
            logger.warning("FeatureManager: No registry attached, skipping refresh.")
            return

        for plugin in self._registry.get_all_plugins():
            # Duck typing check instead of strict isinstance to survive module reloads
            if not (hasattr(plugin, 'name') and hasattr(plugin, 'type') and hasattr(plugin, 'handler')):
                continue
            existing_idx = next((i for i, f in enumerate(self._features) if f.name == plugin.name), -1)
            if existing_idx >= 0:
                self._features[existing_idx] = plugin
                logger.warning(f"FeatureManager: Overwrote existing feature '{plugin.name}'")
            else:
                self._features.append(plugin)
                logger.debug(f"Registered plugin feature: {plugin.name}")

        logger.info(f"FeatureManager: Loaded features. Total: {len(self._features)}")

    def build_pipeline(self, enable_experimental: bool = False, name: str = "StandardPipeline") -> Pipeline:
        """
        Build a pipeline from ALGORITHM features in registration order.
        Experimental features are only included on request.
        """
        pipeline = Pipeline(name)
        for f in self._features:
            if f.type != FeatureType.ALGORITHM or f.handler is None:
                continue
            if f.state == FeatureState.STANDARD:
                pipeline.add_step(f.handler)
            elif enable_experimental and f.state == FeatureState.EXPERIMENTAL:
                pipeline.add_step(f.handler)
        return pipeline

    def get_features_by_type(self, feature_type: FeatureType) -> List[Feature]:
        features = [f for f in self._features if f.type == feature_type]
        logger.debug(f"FeatureManager: Found {len(features)} features of type {feature_type}")
        return features
