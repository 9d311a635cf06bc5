"""Repairs width/height of an attachment record from the artifact on disk."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Union

from avif_backend.services import image_store
from avif_backend.services import observability_utils as obs
from avif_backend.services.results import Failure

logger = obs.get_logger("avif_backend.services.metadata_resolver")


def _positive(value: Any) -> bool:
    try:
        return int(value) > 0
    except (TypeError, ValueError):
        return False


class MetadataResolver:
    def __init__(self, prober: Optional[Callable[[Union[str, Path]], Any]] = None) -> None:
        self._probe = prober or image_store.probe

    def resolve(self, artifact_path: Union[str, Path], existing: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """
        Return ``existing`` untouched when it already has width and height > 0.
        Otherwise probe the file; only the dimension pair is written, and only
        when both values come back valid.
        """
        metadata = dict(existing or {})
        if _positive(metadata.get("width")) and _positive(metadata.get("height")):
            return metadata

        info = self._probe(artifact_path)
        if isinstance(info, Failure) or not (_positive(info.width) and _positive(info.height)):
            logger.warning(f"Could not resolve dimensions for {artifact_path}: {info}")
            obs.metrics_inc("metadata_resolver.failed.probe")
            return metadata

        metadata["width"] = int(info.width)
        metadata["height"] = int(info.height)
        obs.metrics_inc("metadata_resolver.resolved")
        return metadata


__all__ = ["MetadataResolver"]
