# ================================================================
#  IMAGE STORE ADAPTER
#  -----------------------------------
#  • Reads image bytes and header metadata (dimensions, mime, size)
#  • Atomic writes: temp file in the target dir + fsync + os.replace,
#    copy+delete when the rename is refused by the filesystem
#  • Pillow is the only codec backend; absence is reported, not raised
# ================================================================

from __future__ import annotations

import os
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from avif_backend.services import observability_utils as obs
from avif_backend.services.results import ErrorKind, Failure

# --- Pillow (optional at runtime) ---
try:
    from PIL import Image, UnidentifiedImageError, features
    _PILLOW_AVAILABLE = True
except Exception:
    Image = None  # type: ignore
    UnidentifiedImageError = OSError  # type: ignore
    features = None  # type: ignore
    _PILLOW_AVAILABLE = False

logger = obs.get_logger("avif_backend.services.image_store")

FORMAT_TO_MIME = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "AVIF": "image/avif",
    "GIF": "image/gif",
    "BMP": "image/bmp",
    "TIFF": "image/tiff",
}


@dataclass(frozen=True)
class ImageInfo:
    width: int
    height: int
    mime: Optional[str]
    size: int


def pillow_available() -> bool:
    return _PILLOW_AVAILABLE


def avif_supported() -> bool:
    """True when the installed Pillow can both decode and encode AVIF."""
    if not _PILLOW_AVAILABLE:
        return False
    try:
        return bool(features.check("avif"))
    except Exception:
        logger.debug("Pillow feature probe for avif failed", exc_info=True)
        return False


def is_readable_file(path: Union[str, Path]) -> bool:
    p = Path(path)
    return p.is_file() and os.access(p, os.R_OK)


def read_bytes(path: Union[str, Path]) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def open_image(path: Union[str, Path]) -> "Image.Image":
    """Open lazily: only the header is parsed until ``load()`` is called."""
    if not _PILLOW_AVAILABLE:
        raise RuntimeError("Pillow not installed; image operations unavailable")
    return Image.open(path)


def mime_of(img: "Image.Image") -> Optional[str]:
    return FORMAT_TO_MIME.get((img.format or "").upper())


def probe(path: Union[str, Path]) -> Union[ImageInfo, Failure]:
    p = Path(path)
    if not is_readable_file(p):
        return Failure(ErrorKind.SOURCE_UNREADABLE, f"not a readable file: {p}")
    if not _PILLOW_AVAILABLE:
        obs.metrics_inc("image_store.error.pillow_missing")
        return Failure(ErrorKind.DECODE_ERROR, "Pillow not installed")
    try:
        with Image.open(p) as img:
            width, height = img.size
            mime = mime_of(img)
        return ImageInfo(width=int(width), height=int(height), mime=mime, size=p.stat().st_size)
    except Image.DecompressionBombError as e:
        logger.debug(f"Probe refused oversized image {p}: {e}")
        return Failure(ErrorKind.DIMENSION_EXCEEDED, str(e))
    except (UnidentifiedImageError, OSError, ValueError) as e:
        logger.debug(f"Probe failed for {p}: {e}")
        return Failure(ErrorKind.DECODE_ERROR, str(e))


def sniff_mime(path: Union[str, Path]) -> Optional[str]:
    """Mime from the decoded header, ignoring the file extension."""
    info = probe(path)
    if isinstance(info, Failure):
        return None
    return info.mime


# --- Atomic write helper ---
def atomic_write_bytes(path: Union[str, Path], data: bytes) -> None:
    path = Path(path)
    tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        tmp_path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp_path, "wb") as f:
            f.write(data)
            f.flush()
            try:
                os.fsync(f.fileno())
            except OSError:
                pass
        try:
            os.replace(tmp_path, path)
        except OSError as e:
            logger.warning(f"rename() failed for {path} ({e}); falling back to copy")
            original = path.read_bytes() if path.exists() else None
            try:
                shutil.copyfile(tmp_path, path)
            except Exception:
                # never leave a half-copied file at the final path
                if original is not None:
                    path.write_bytes(original)
                elif path.exists():
                    path.unlink()
                raise
            tmp_path.unlink()
        logger.debug(f"Atomic write completed: {path}")
    except Exception:
        logger.exception(f"Atomic write failed for {path}")
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass
        raise


def remove_quietly(path: Union[str, Path]) -> bool:
    """Best-effort delete. Returns False (and logs) instead of raising."""
    try:
        Path(path).unlink()
        return True
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.warning(f"Could not delete {path}: {e}")
        obs.metrics_inc("image_store.failed.delete")
        return False


__all__ = [
    "ImageInfo",
    "FORMAT_TO_MIME",
    "pillow_available",
    "avif_supported",
    "is_readable_file",
    "read_bytes",
    "open_image",
    "mime_of",
    "probe",
    "sniff_mime",
    "atomic_write_bytes",
    "remove_quietly",
]
