"""WebP siblings for AVIF artifacts, served to clients that do not accept AVIF."""

from __future__ import annotations

from io import BytesIO
from pathlib import Path
from typing import Callable, Optional, Union

from avif_backend.services import image_store
from avif_backend.services import observability_utils as obs
from avif_backend.services.models import clamp_quality
from avif_backend.services.results import ErrorKind, Failure

logger = obs.get_logger("avif_backend.services.webp_fallback")


def webp_sibling_path(avif_path: Union[str, Path]) -> Path:
    return Path(avif_path).with_suffix(".webp")


def webp_sibling_url(avif_url: str) -> Optional[str]:
    if not avif_url:
        return None
    base, sep, query = avif_url.partition("?")
    if not base.lower().endswith(".avif"):
        return None
    return base[: -len(".avif")] + ".webp" + (sep + query if sep else "")


def write_webp_sibling(avif_path: Union[str, Path], quality: int = 80) -> Union[Path, Failure]:
    src = Path(avif_path)
    out_path = webp_sibling_path(src)
    safe_quality = clamp_quality(quality)
    try:
        with image_store.open_image(src) as img:
            save_img = img.convert("RGBA" if "A" in img.getbands() else "RGB")
    except Exception as e:
        logger.warning(f"WebP fallback: cannot decode {src}: {e}")
        return Failure(ErrorKind.DECODE_ERROR, str(e))

    buf = BytesIO()
    try:
        save_img.save(buf, format="WEBP", quality=safe_quality, method=6)
    except Exception as e:
        logger.exception(f"Failed to encode WEBP fallback for {src}")
        return Failure(ErrorKind.ENCODE_ERROR, str(e))
    finally:
        save_img.close()

    try:
        image_store.atomic_write_bytes(out_path, buf.getvalue())
    except Exception as e:
        return Failure(ErrorKind.WRITE_ERROR, str(e))
    obs.metrics_inc("webp_fallback.written")
    logger.info(f"Saved WEBP fallback: {out_path} quality={safe_quality}")
    return out_path


def client_accepts_avif(accept_header: Optional[str]) -> bool:
    return "image/avif" in (accept_header or "").lower()


def fallback_url(avif_url: str, accept_header: Optional[str], exists: Callable[[str], bool]) -> str:
    """
    URL to serve for an AVIF attachment: the AVIF itself when the client
    accepts it, otherwise its WebP sibling if ``exists`` confirms one.
    """
    if client_accepts_avif(accept_header):
        return avif_url
    webp_url = webp_sibling_url(avif_url)
    if webp_url is None:
        return avif_url
    try:
        return webp_url if exists(webp_url) else avif_url
    except Exception:
        logger.exception("WebP fallback existence check failed")
        return avif_url


__all__ = [
    "webp_sibling_path",
    "webp_sibling_url",
    "write_webp_sibling",
    "client_accepts_avif",
    "fallback_url",
]
