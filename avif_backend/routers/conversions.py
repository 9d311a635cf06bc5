# ╔══════════════════════════════════════════════════════════════════════════════╗
# ║ ROUTER : AVIF CONVERSIONS                                                   ║
# ╠══════════════════════════════════════════════════════════════════════════════╣
# ║ Module:         avif_backend/routers/conversions.py                          ║
# ║ Scope:          Upload hook, bulk conversion trigger, CDN purge, health      ║
# ║ Observability:  metrics_inc + audit_log via services.observability_utils     ║
# ║ Tests:          avif_backend/tests/test_conversions_router.py                ║
# ╚══════════════════════════════════════════════════════════════════════════════╝

import secrets
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pathlib import Path
from typing import Optional

from avif_backend.schemas.schema import (
    BatchStatsOut,
    ConversionResultOut,
    ConvertRequest,
    ErrorOut,
    HealthOut,
    MediaUrlOut,
    PurgeOut,
    PurgeRequest,
)
from avif_backend.services import env_utils, webp_fallback
from avif_backend.services import observability_utils as obs
from avif_backend.services.media_library import mime_for_path
from avif_backend.services.models import AVIF_MIME, ConversionResult
from avif_backend.services.orchestrator import BatchConverter, health_check
from avif_backend.services.results import ErrorKind, Failure

logger = obs.get_logger("avif_backend.routers.conversions")


def _metric_inc(name: str, value: int = 1) -> None:
    try:
        obs.metrics_inc(name, value)
    except Exception:
        logger.debug("metric emit failed for %s", name, exc_info=True)


def _audit(event: str, status: str, detail: dict) -> None:
    try:
        obs.audit_log(event, "conversions_router", status, detail)
    except Exception:
        logger.debug("audit emit failed for %s", event, exc_info=True)


router = APIRouter(prefix="/avif/v1")

_STATUS_BY_KIND = {
    ErrorKind.SOURCE_UNREADABLE: 404,
    ErrorKind.UNSUPPORTED_FORMAT: 400,
    ErrorKind.DIMENSION_EXCEEDED: 400,
    ErrorKind.UNSUPPORTED_ENHANCEMENT: 400,
    ErrorKind.INVALID_CREDENTIALS: 400,
    ErrorKind.DECODE_ERROR: 422,
    ErrorKind.ENCODE_ERROR: 500,
    ErrorKind.WRITE_ERROR: 500,
    ErrorKind.REMOTE_ERROR: 502,
    ErrorKind.TRANSPORT_ERROR: 502,
    ErrorKind.INTERNAL_ERROR: 500,
}


def get_converter(request: Request) -> BatchConverter:
    """The converter main.create_app stored on app.state (overridable in tests)."""
    converter = getattr(request.app.state, "converter", None)
    if converter is None:
        raise HTTPException(status_code=503, detail="converter not configured")
    return converter


def require_token(
    x_api_token: Optional[str] = Header(default=None),
    converter: BatchConverter = Depends(get_converter),
) -> None:
    """Mutating routes need X-API-Token when API_TOKEN is configured."""
    expected = converter.settings.API_TOKEN
    if not expected:
        return
    if not x_api_token or not secrets.compare_digest(x_api_token, expected):
        _metric_inc("router.conversions.unauthorized")
        raise HTTPException(status_code=401, detail="missing or invalid API token")


# ────────────────────────────────────────────────────────────────
# Helpers
def _raise_for(failure: Failure) -> None:
    status = _STATUS_BY_KIND.get(failure.kind, 500)
    _metric_inc(f"router.conversions.error.{failure.category.value}")
    raise HTTPException(status_code=status, detail=str(failure))


def _error_out(failure: Optional[Failure]) -> Optional[ErrorOut]:
    if failure is None:
        return None
    return ErrorOut(
        kind=failure.kind.value,
        category=failure.category.value,
        detail=failure.detail,
        status_code=failure.status_code,
    )


def _result_out(result: ConversionResult) -> ConversionResultOut:
    return ConversionResultOut(
        id=result.source.identifier,
        status=result.status.value,
        state=result.state.value,
        source=str(result.source.path),
        output=str(result.target_path) if result.target_path else None,
        metadata=result.metadata,
        cdn_location=result.cdn_location,
        cdn_error=_error_out(result.cdn_error),
        warnings=result.warnings,
    )


def _media_root(converter: BatchConverter) -> Path:
    return Path(converter.settings.MEDIA_ROOT or env_utils.get_media_root()).resolve()


def _confine(raw: str, converter: BatchConverter) -> Path:
    """Resolve an upload path (absolute, or relative to the media root); reject anything outside the root."""
    root = _media_root(converter)
    candidate = Path(raw).expanduser()
    if not candidate.is_absolute():
        candidate = root / candidate
    candidate = candidate.resolve()
    if not candidate.is_relative_to(root):
        _metric_inc("router.conversions.path_rejected")
        _audit("upload_path", "rejected", {"path": raw})
        raise HTTPException(status_code=403, detail="path is outside the media root")
    return candidate


def _run_upload(req: ConvertRequest, converter: BatchConverter, event: str) -> ConversionResultOut:
    path = _confine(req.path, converter)
    mime = req.mime or mime_for_path(path) or ""
    result = converter.handle_upload(path, mime, identifier=req.identifier)
    if not result.ok:
        _audit(event, "failure", {"path": req.path, "reason": str(result.error)})
        _raise_for(result.error)
    _metric_inc(f"router.conversions.{event}.success")
    _audit(event, "success", {"path": req.path, "output": str(result.target_path)})
    return _result_out(result)


# ────────────────────────────────────────────────────────────────
# Routes
@router.post("/convert", response_model=ConversionResultOut, dependencies=[Depends(require_token)])
def convert_upload(req: ConvertRequest, converter: BatchConverter = Depends(get_converter)):
    return _run_upload(req, converter, "convert")


@router.post("/optimize", response_model=ConversionResultOut, dependencies=[Depends(require_token)])
def optimize_upload(req: ConvertRequest, converter: BatchConverter = Depends(get_converter)):
    if (req.mime or mime_for_path(req.path)) != AVIF_MIME:
        raise HTTPException(status_code=400, detail="optimize accepts AVIF files only")
    return _run_upload(req, converter, "optimize")


@router.post("/convert-all", response_model=BatchStatsOut, dependencies=[Depends(require_token)])
def convert_all(converter: BatchConverter = Depends(get_converter)):
    try:
        stats = converter.run_batch()
    except ValueError as e:
        raise HTTPException(status_code=500, detail=str(e))
    _metric_inc("router.conversions.convert_all")
    _audit("convert_all", "success", stats.as_dict())
    return BatchStatsOut(**stats.as_dict(), summary=stats.summary())


@router.post("/cdn/purge", response_model=PurgeOut, dependencies=[Depends(require_token)])
def purge_urls(req: PurgeRequest, converter: BatchConverter = Depends(get_converter)):
    res = converter.purge(req.urls)
    if isinstance(res, Failure):
        _audit("cdn_purge", "failure", {"urls": len(req.urls), "reason": str(res)})
        _raise_for(res)
    _audit("cdn_purge", "success", {"urls": len(req.urls)})
    return PurgeOut(files=req.urls, response=res)


@router.get("/health", response_model=HealthOut)
def health(converter: BatchConverter = Depends(get_converter)):
    report = health_check(converter.settings)
    _metric_inc("router.conversions.health")
    return report


def _local_file_exists(url: str, converter: BatchConverter) -> bool:
    """Map a public media URL back onto the media root and check the file."""
    base = env_utils.get_public_media_base().rstrip("/")
    path_part = url.split("?", 1)[0]
    if not path_part.startswith(base + "/"):
        return False
    rel = path_part[len(base) + 1:]
    root = _media_root(converter)
    candidate = (root / rel).resolve()
    if not candidate.is_relative_to(root):
        return False
    return candidate.is_file()


@router.get("/media-url", response_model=MediaUrlOut)
def media_url(
    url: str,
    accept: Optional[str] = Header(default=None),
    converter: BatchConverter = Depends(get_converter),
):
    served = webp_fallback.fallback_url(url, accept, lambda u: _local_file_exists(u, converter))
    _metric_inc("router.conversions.media_url.webp" if served != url else "router.conversions.media_url.avif")
    return MediaUrlOut(url=served, fallback=served != url)
