"""Engine registry: which AI CLIs exist and which one is the default."""
from utils.config import logger, DEFAULT_ENGINE, ENGINE_ORDER, _get_engine_config
from core.errors import EngineUnavailable
from providers.claude import ClaudeEngine, DeepSeekEngine
from providers.codex import CodexEngine


class EngineRegistry:
    def __init__(self, engines=None, default=DEFAULT_ENGINE, config_loader=_get_engine_config):
        if engines is None:
            engines = [ClaudeEngine(), DeepSeekEngine(), CodexEngine()]
        self._engines = {engine.name: engine for engine in engines}
        self.default = default if default in self._engines else next(iter(self._engines), None)
        self._config_loader = config_loader

    def register(self, engine):
        self._engines[engine.name] = engine
        if self.default is None:
            self.default = engine.name

    def names(self):
        ordered = [name for name in ENGINE_ORDER if name in self._engines]
        ordered.extend(sorted(name for name in self._engines if name not in ENGINE_ORDER))
        return ordered

    def config(self):
        return self._config_loader() or {}

    def get_engine(self, name=None):
        """Return the adapter for `name` (default engine when empty) or raise EngineUnavailable."""
        engine_name = name or self.default
        engine = self._engines.get(engine_name)
        if engine is None:
            raise EngineUnavailable(
                engine_name,
                f"supported engines: {', '.join(self.names())}",
            )
        return engine

    def display_name(self, name):
        engine = self._engines.get(name)
        if engine is None:
            return name
        return engine.display_name or engine.name

    def check_engine_available(self, name):
        try:
            engine = self.get_engine(name)
        except EngineUnavailable:
            return False
        try:
            return engine.is_available(self.config())
        except OSError as e:
            logger.error(f"[Engine] Availability check failed for {name}: {e}", exc_info=True)
            return False

    def available_engines(self):
        return [self._engines[name].describe(self.default) for name in self.names()]
