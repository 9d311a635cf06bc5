"""
Media library contracts consumed by the orchestrator, plus a local
filesystem implementation used by the CLI and the HTTP layer.

The local library treats every image under ``root`` as an attachment whose
identifier is its path relative to ``root``. Attachment records and the
option store live in one JSON index file, rewritten atomically.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Union, runtime_checkable

from avif_backend.services import env_utils, image_store
from avif_backend.services import observability_utils as obs
from avif_backend.services.models import SourceImage

logger = obs.get_logger("avif_backend.services.media_library")

EXTENSION_MIMES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".avif": "image/avif",
}


@runtime_checkable
class MediaEnumerator(Protocol):
    def list_candidates(self, mimes: Iterable[str]) -> List[SourceImage]:
        ...


@runtime_checkable
class AttachmentStore(Protocol):
    def get_metadata(self, identifier: str) -> Dict[str, Any]:
        ...

    def set_metadata(self, identifier: str, record: Dict[str, Any]) -> None:
        ...


@runtime_checkable
class OptionStore(Protocol):
    def get_option(self, key: str, default: Any = None) -> Any:
        ...

    def set_option(self, key: str, value: Any) -> None:
        ...


class InMemoryOptionStore:
    def __init__(self, values: Optional[Dict[str, Any]] = None) -> None:
        self._values: Dict[str, Any] = dict(values or {})

    def get_option(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set_option(self, key: str, value: Any) -> None:
        self._values[key] = value


def mime_for_path(path: Union[str, Path]) -> Optional[str]:
    return EXTENSION_MIMES.get(Path(path).suffix.lower())


class LocalMediaLibrary:
    def __init__(self, root: Union[str, Path, None] = None, index_path: Union[str, Path, None] = None) -> None:
        self.root = Path(root or env_utils.get_media_root())
        self.index_path = Path(index_path) if index_path else self.root / ".avif_media_index.json"
        self._lock = threading.Lock()

    # --- index persistence ---
    def _load(self) -> Dict[str, Any]:
        if not self.index_path.exists():
            return {"attachments": {}, "options": {}}
        try:
            data = json.loads(self.index_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.exception(f"Media index unreadable, starting empty: {self.index_path}")
            return {"attachments": {}, "options": {}}
        data.setdefault("attachments", {})
        data.setdefault("options", {})
        return data

    def _save(self, data: Dict[str, Any]) -> None:
        payload = json.dumps(data, indent=2, sort_keys=True).encode("utf-8")
        image_store.atomic_write_bytes(self.index_path, payload)

    # --- MediaEnumerator ---
    def identifier_for(self, path: Union[str, Path]) -> str:
        p = Path(path)
        try:
            return p.resolve().relative_to(self.root.resolve()).as_posix()
        except ValueError:
            return str(p)

    def path_for(self, identifier: str) -> Path:
        record = self.get_metadata(identifier)
        if record.get("file"):
            return Path(record["file"])
        return self.root / identifier

    def list_candidates(self, mimes: Iterable[str]) -> List[SourceImage]:
        wanted = set(mimes)
        if not self.root.is_dir():
            logger.warning(f"Media root missing or invalid: {self.root}")
            return []
        candidates: List[SourceImage] = []
        for p in sorted(self.root.rglob("*")):
            if not p.is_file() or p.name.startswith("."):
                continue
            mime = mime_for_path(p)
            if mime in wanted:
                candidates.append(SourceImage.from_path(p, mime, identifier=self.identifier_for(p)))
        logger.info(f"Found {len(candidates)} candidates under {self.root}")
        return candidates

    # --- AttachmentStore ---
    def get_metadata(self, identifier: str) -> Dict[str, Any]:
        with self._lock:
            return dict(self._load()["attachments"].get(identifier, {}))

    def set_metadata(self, identifier: str, record: Dict[str, Any]) -> None:
        with self._lock:
            data = self._load()
            data["attachments"][identifier] = dict(record)
            self._save(data)

    # --- OptionStore ---
    def get_option(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._load()["options"].get(key, default)

    def set_option(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._load()
            data["options"][key] = value
            self._save(data)


__all__ = [
    "MediaEnumerator",
    "AttachmentStore",
    "OptionStore",
    "InMemoryOptionStore",
    "LocalMediaLibrary",
    "EXTENSION_MIMES",
    "mime_for_path",
]
