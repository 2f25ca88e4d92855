from .event_bridge import EngineSignals

__all__ = ["EngineSignals"]
