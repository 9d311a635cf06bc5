# ================================================================
#  FORMAT TRANSCODER : JPEG / PNG / WebP → AVIF, AVIF re-compression
#  -----------------------------------
#  • Dimension cap checked from the header, before pixel data is decoded
#  • EXIF stripped: only pixel data is re-encoded
#  • Output written atomically next to the source (same stem, .avif)
#  • Never raises: every error becomes a typed Failure
#
#  Metric keys:
#    * transcoder.converted
#    * transcoder.failed.<ErrorKind>
# ================================================================

from __future__ import annotations

from io import BytesIO
from pathlib import Path
from typing import Optional, Union

from avif_backend.services import image_store
from avif_backend.services import observability_utils as obs
from avif_backend.services.models import (
    ACCEPTED_MIMES,
    MAX_DIMENSION,
    ConversionTarget,
    avif_target_path,
    clamp_quality,
)
from avif_backend.services.results import ErrorKind, Failure

logger = obs.get_logger("avif_backend.services.transcoder")

# Re-encoding a quality-80 AVIF at quality 80 stays within this fraction of
# the first pass size (measured with libavif/aom through Pillow).
ROUNDTRIP_SIZE_TOLERANCE = 0.35

DEFAULT_SPEED = 6


def _strip_exif(img: "image_store.Image.Image") -> "image_store.Image.Image":
    try:
        return image_store.Image.frombytes(img.mode, img.size, img.tobytes())
    except Exception:
        logger.debug("EXIF strip fallback returning a plain copy")
        return img.copy()


def _prepare_for_avif(img: "image_store.Image.Image") -> "image_store.Image.Image":
    has_transparency = img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info)
    target_mode = "RGBA" if has_transparency else "RGB"
    converted = img.convert(target_mode) if img.mode != target_mode else img
    stripped = _strip_exif(converted)
    if converted is not img:
        converted.close()
    return stripped


class Transcoder:
    """Encodes rasters to AVIF with a fixed dimension ceiling."""

    def __init__(self, speed: int = DEFAULT_SPEED, max_dimension: int = MAX_DIMENSION) -> None:
        self.speed = max(0, min(10, int(speed)))
        self.max_dimension = int(max_dimension)

    def _fail(self, kind: ErrorKind, detail: str, path: Optional[Path] = None) -> Failure:
        obs.metrics_inc(f"transcoder.failed.{kind.value}")
        logger.warning(f"Transcode failed ({kind.value}) for {path}: {detail}")
        return Failure(kind, detail)

    def exceeds_limit(self, width: int, height: int) -> bool:
        return width > self.max_dimension or height > self.max_dimension

    def transcode(self, source_path: Union[str, Path], quality: int) -> Union[ConversionTarget, Failure]:
        src = Path(source_path)
        q = clamp_quality(quality)

        if not image_store.is_readable_file(src):
            return self._fail(ErrorKind.SOURCE_UNREADABLE, "file missing or not readable", src)
        if not image_store.avif_supported():
            return self._fail(ErrorKind.ENCODE_ERROR, "installed Pillow has no AVIF codec", src)

        try:
            img = image_store.open_image(src)
        except image_store.Image.DecompressionBombError as e:
            # header pixel count is past Pillow's bomb guard, far beyond max_dimension
            return self._fail(ErrorKind.DIMENSION_EXCEEDED, str(e), src)
        except Exception as e:
            return self._fail(ErrorKind.DECODE_ERROR, str(e) or type(e).__name__, src)

        try:
            mime = image_store.mime_of(img)
            if mime not in ACCEPTED_MIMES:
                return self._fail(ErrorKind.UNSUPPORTED_FORMAT, f"format {img.format!r} is not accepted", src)

            width, height = img.size
            if self.exceeds_limit(width, height):
                return self._fail(
                    ErrorKind.DIMENSION_EXCEEDED,
                    f"{width}x{height} exceeds {self.max_dimension}px",
                    src,
                )

            try:
                img.load()
            except Exception as e:
                return self._fail(ErrorKind.DECODE_ERROR, str(e) or type(e).__name__, src)

            logger.debug(f"Transcoding {src} ({mime}, {width}x{height}) at quality={q}")
            return self.encode(img, avif_target_path(src), q)
        finally:
            # always close the image handle to prevent leaks
            try:
                img.close()
            except Exception:
                pass

    def encode(self, img: "image_store.Image.Image", target_path: Union[str, Path], quality: int) -> Union[ConversionTarget, Failure]:
        target = Path(target_path)
        q = clamp_quality(quality)

        if self.exceeds_limit(*img.size):
            return self._fail(ErrorKind.DIMENSION_EXCEEDED, f"{img.size[0]}x{img.size[1]} exceeds {self.max_dimension}px", target)

        prepared = None
        buf = BytesIO()
        try:
            prepared = _prepare_for_avif(img)
            prepared.save(buf, format="AVIF", quality=q, speed=self.speed)
        except Exception as e:
            return self._fail(ErrorKind.ENCODE_ERROR, str(e) or type(e).__name__, target)
        finally:
            if prepared is not None and prepared is not img:
                prepared.close()

        try:
            image_store.atomic_write_bytes(target, buf.getvalue())
        except Exception as e:
            return self._fail(ErrorKind.WRITE_ERROR, str(e) or type(e).__name__, target)

        obs.metrics_inc("transcoder.converted")
        logger.info(f"Saved AVIF: {target} quality={q}")
        return ConversionTarget(path=target, quality=q)


__all__ = ["Transcoder", "ROUNDTRIP_SIZE_TOLERANCE", "DEFAULT_SPEED"]
