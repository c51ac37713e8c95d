from importlib import import_module

__all__ = [
    "StrategyEngine",
    "build_engine",
    "VenueRegistry",
    "SignerSessions",
]

_LAZY_EXPORTS = {
    "StrategyEngine": ("services.engine", "StrategyEngine"),
    "build_engine": ("services.engine", "build_engine"),
    "VenueRegistry": ("services.venues.registry", "VenueRegistry"),
    "SignerSessions": ("services.venues.registry", "SignerSessions"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
