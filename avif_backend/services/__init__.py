"""
Services package initializer.

Submodules are resolved lazily so that importing one service (for example
``image_store`` from a test) does not pull in the HTTP client or the
settings layer.
"""

from __future__ import annotations

import importlib
import types

_submodules = (
    "cdn_publisher",
    "enhancement",
    "env_utils",
    "image_store",
    "media_library",
    "metadata_resolver",
    "models",
    "observability_utils",
    "orchestrator",
    "resilience_utils",
    "results",
    "settings",
    "transcoder",
    "webp_fallback",
)

__all__ = list(_submodules)


def __getattr__(attr: str) -> types.ModuleType:
    if attr not in _submodules:
        raise AttributeError(f"module '{__name__}' has no attribute '{attr}'")
    mod = importlib.import_module(f"{__name__}.{attr}")
    globals()[attr] = mod
    return mod


def __dir__():
    return sorted(set(globals().keys()) | set(_submodules))
