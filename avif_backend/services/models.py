"""Pipeline data model: inputs, targets, per-item results and batch counters."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from avif_backend.services.results import Failure

AVIF_MIME = "image/avif"
AVIF_SEQUENCE_MIME = "image/avif-sequence"
SOURCE_MIMES = ("image/jpeg", "image/png", "image/webp")
ACCEPTED_MIMES = SOURCE_MIMES + (AVIF_MIME,)

MIN_QUALITY = 1
MAX_QUALITY = 100
MAX_DIMENSION = 8192


def clamp_quality(value: Any) -> int:
    try:
        q = int(value)
    except (TypeError, ValueError):
        q = MAX_QUALITY
    return max(MIN_QUALITY, min(MAX_QUALITY, q))


def avif_target_path(source_path: Union[str, Path]) -> Path:
    """Same directory, same base name, ``.avif`` extension."""
    return Path(source_path).with_suffix(".avif")


@dataclass(frozen=True)
class SourceImage:
    identifier: str
    path: Path
    mime: str
    size: int = 0

    @classmethod
    def from_path(cls, path: Union[str, Path], mime: str, identifier: Optional[str] = None) -> "SourceImage":
        p = Path(path)
        try:
            size = p.stat().st_size
        except OSError:
            size = 0
        return cls(identifier=identifier or p.name, path=p, mime=mime, size=size)


@dataclass(frozen=True)
class ConversionTarget:
    path: Path
    quality: int
    mime: str = AVIF_MIME


@dataclass
class ArtifactMetadata:
    width: int = 0
    height: int = 0
    mime: str = AVIF_MIME
    size: int = 0
    file: Optional[str] = None

    @property
    def has_dimensions(self) -> bool:
        return self.width > 0 and self.height > 0

    def as_dict(self) -> Dict[str, Any]:
        return {"width": self.width, "height": self.height, "mime": self.mime, "filesize": self.size, "file": self.file}


@dataclass(frozen=True)
class CdnCredentials:
    base_url: str
    api_key: str
    zone_id: str

    def is_complete(self) -> bool:
        return all((value or "").strip() for value in (self.base_url, self.api_key, self.zone_id))


class ItemState(str, Enum):
    PENDING = "pending"
    CONVERTING = "converting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ResultStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class ConversionResult:
    status: ResultStatus
    source: SourceImage
    target_path: Optional[Path] = None
    error: Optional[Failure] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    cdn_location: Optional[Dict[str, Any]] = None
    cdn_error: Optional[Failure] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is ResultStatus.SUCCESS

    @property
    def state(self) -> ItemState:
        return ItemState.SUCCEEDED if self.ok else ItemState.FAILED


@dataclass
class BatchStats:
    processed: int = 0
    success: int = 0
    failed: int = 0
    cdn_failed: int = 0
    cancelled: bool = False
    failures: List[Dict[str, str]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def mark_attempt(self) -> None:
        with self._lock:
            self.processed += 1

    def mark_result(self, result: ConversionResult) -> None:
        with self._lock:
            if result.ok:
                self.success += 1
                if result.cdn_error is not None:
                    self.cdn_failed += 1
            else:
                self.failed += 1
                self.failures.append({"id": result.source.identifier, "reason": str(result.error)})

    def as_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "processed": self.processed,
                "success": self.success,
                "failed": self.failed,
                "cdn_failed": self.cdn_failed,
                "cancelled": self.cancelled,
                "failures": list(self.failures),
            }

    def summary(self) -> str:
        return f"Conversion complete: {self.processed} processed, {self.success} successful, {self.failed} failed"
