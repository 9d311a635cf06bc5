# ================================================================
#  BATCH CONVERTER / ORCHESTRATOR
#  -----------------------------------
#  Per item: transcode → enhance (opt.) → re-encode if mutated →
#  resolve metadata → CDN publish (opt.) → record update → cleanup.
#
#  • Item states: pending → converting → succeeded | failed (terminal)
#  • One item's failure never stops the batch
#  • CDN failure is logged and counted, the conversion still succeeds
#  • Originals are deleted only after the artifact is on disk; a failed
#    delete is logged and never turns a success into a failure
#  • Two candidates that map to the same .avif path (photo.jpg and
#    photo.png) never both run; the later one fails with WriteError
#  • Optional bounded worker pool (MAX_WORKERS) and cancellation event,
#    both checked between items only
#
#  Metric keys:
#    * orchestrator.item.succeeded / orchestrator.item.failed
#    * orchestrator.cdn.failed
#    * orchestrator.cleanup.failed
# ================================================================

from __future__ import annotations

import argparse
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from avif_backend.services import image_store, resilience_utils, webp_fallback
from avif_backend.services import observability_utils as obs
from avif_backend.services.cdn_publisher import CdnPublisher, remote_url
from avif_backend.services.enhancement import EnhancementPipeline, EnhancementReport, parse_stages
from avif_backend.services.media_library import (
    AttachmentStore,
    LocalMediaLibrary,
    MediaEnumerator,
    OptionStore,
    mime_for_path,
)
from avif_backend.services.metadata_resolver import MetadataResolver
from avif_backend.services.models import (
    ACCEPTED_MIMES,
    AVIF_MIME,
    AVIF_SEQUENCE_MIME,
    SOURCE_MIMES,
    BatchStats,
    CdnCredentials,
    ConversionResult,
    ConversionTarget,
    ItemState,
    ResultStatus,
    SourceImage,
    avif_target_path,
    clamp_quality,
)
from avif_backend.services.results import ErrorKind, Failure
from avif_backend.services.settings import AvifSettings, get_settings
from avif_backend.services.transcoder import Transcoder

logger = obs.get_logger("avif_backend.services.orchestrator")

CandidateSelector = Union[Callable[[], Iterable[SourceImage]], Iterable[SourceImage]]

_TRUE_STRINGS = ("1", "true", "yes", "on")


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


class _TransientPublishFailure(ConnectionError):
    """Carries a retryable CDN Failure through resilience_utils.retry_sync."""

    def __init__(self, failure: Failure) -> None:
        super().__init__(str(failure))
        self.failure = failure


def _is_retryable(failure: Failure) -> bool:
    if failure.kind is ErrorKind.TRANSPORT_ERROR:
        return True
    return failure.kind is ErrorKind.REMOTE_ERROR and (failure.status_code or 0) >= 500


@dataclass(frozen=True)
class RunOptions:
    quality: int
    stages: List[str] = field(default_factory=list)
    cdn_enabled: bool = False
    optimize_avif: bool = True
    delete_originals: bool = True
    webp_fallback: bool = False
    webp_quality: int = 80


def validate_upload(path: Union[str, Path], declared_mime: str) -> Optional[Failure]:
    """Reject uploads whose content does not match an accepted image type."""
    if declared_mime not in ACCEPTED_MIMES and declared_mime != AVIF_SEQUENCE_MIME:
        return Failure(ErrorKind.UNSUPPORTED_FORMAT, f"mime {declared_mime!r} is not accepted")
    if not image_store.is_readable_file(path):
        return Failure(ErrorKind.SOURCE_UNREADABLE, f"not a readable file: {path}")
    info = image_store.probe(path)
    if isinstance(info, Failure) and info.kind is ErrorKind.DIMENSION_EXCEEDED:
        return info
    sniffed = None if isinstance(info, Failure) else info.mime
    if declared_mime in (AVIF_MIME, AVIF_SEQUENCE_MIME) and sniffed != AVIF_MIME:
        return Failure(ErrorKind.UNSUPPORTED_FORMAT, "Invalid AVIF file format.")
    if sniffed is None:
        return Failure(ErrorKind.DECODE_ERROR, "content is not a decodable image")
    return None


class BatchConverter:
    """Runs the conversion pipeline for one upload or for every candidate in the library."""

    def __init__(
        self,
        settings: Optional[AvifSettings] = None,
        transcoder: Optional[Transcoder] = None,
        enhancer: Optional[EnhancementPipeline] = None,
        resolver: Optional[MetadataResolver] = None,
        publisher: Optional[CdnPublisher] = None,
        enumerator: Optional[MediaEnumerator] = None,
        attachments: Optional[AttachmentStore] = None,
        options: Optional[OptionStore] = None,
        cancel_event: Optional[threading.Event] = None,
        retry_backoff: float = 1.0,
    ) -> None:
        self.settings = settings or get_settings()
        self.transcoder = transcoder or Transcoder(speed=self.settings.AVIF_SPEED)
        self.enhancer = enhancer or EnhancementPipeline()
        self.resolver = resolver or MetadataResolver()
        self.publisher = publisher or CdnPublisher(
            CdnCredentials(
                base_url=self.settings.CDN_URL or "",
                api_key=self.settings.CDN_API_KEY or "",
                zone_id=self.settings.CDN_ZONE_ID or "",
            ),
            timeout=self.settings.CDN_TIMEOUT,
        )
        self.enumerator = enumerator
        self.attachments = attachments
        self.options = options
        self.cancel_event = cancel_event or threading.Event()
        self.retry_backoff = retry_backoff
        self.last_stats: Optional[BatchStats] = None

    # --- configuration ---
    def _option(self, key: str, default: Any) -> Any:
        if self.options is None:
            return default
        try:
            return self.options.get_option(key, default)
        except Exception:
            logger.exception(f"Option store lookup failed for {key}; using settings default")
            return default

    def run_options(self) -> RunOptions:
        s = self.settings
        enable_ai = _as_bool(self._option("enable_ai", s.ENABLE_AI))
        stages = self._option("ai_stages", s.ai_stage_list) if enable_ai else []
        if isinstance(stages, str):
            stages = [x.strip() for x in stages.split(",") if x.strip()]
        return RunOptions(
            quality=clamp_quality(self._option("compression_quality", s.COMPRESSION_QUALITY)),
            stages=list(stages),
            cdn_enabled=_as_bool(self._option("cdn_enabled", s.CDN_ENABLED)),
            optimize_avif=_as_bool(self._option("enable_optimization", s.ENABLE_OPTIMIZATION)),
            delete_originals=_as_bool(self._option("delete_originals", s.DELETE_ORIGINALS)),
            webp_fallback=_as_bool(self._option("generate_webp_fallback", s.GENERATE_WEBP_FALLBACK)),
            webp_quality=clamp_quality(self._option("webp_fallback_quality", s.WEBP_FALLBACK_QUALITY)),
        )

    # --- single item ---
    def convert_one(self, source: SourceImage, run_options: Optional[RunOptions] = None) -> ConversionResult:
        """Run the full stage sequence for one image; never raises."""
        opts = run_options or self.run_options()
        logger.debug(f"{source.identifier}: {ItemState.PENDING.value} -> {ItemState.CONVERTING.value}")
        try:
            result = self._convert(source, opts)
        except Exception as e:
            logger.exception(f"Unexpected error while converting {source.path}")
            result = ConversionResult(ResultStatus.FAILURE, source, error=Failure(ErrorKind.INTERNAL_ERROR, str(e)))

        if result.ok:
            obs.metrics_inc("orchestrator.item.succeeded")
            obs.audit_log("avif.convert", str(source.path), "success", {"output": str(result.target_path)})
        else:
            obs.metrics_inc("orchestrator.item.failed")
            obs.audit_log("avif.convert", str(source.path), "failure", {"reason": str(result.error)})
            logger.error(f"AVIF conversion failed for {source.identifier}: {result.error}")
        logger.debug(f"{source.identifier}: {ItemState.CONVERTING.value} -> {result.state.value}")
        return result

    def handle_upload(self, path: Union[str, Path], mime: str, identifier: Optional[str] = None) -> ConversionResult:
        """Upload hook: validate the stored file, then convert it."""
        source = SourceImage.from_path(path, mime, identifier=identifier)
        rejected = validate_upload(path, mime)
        if rejected is not None:
            logger.warning(f"Upload rejected for {path}: {rejected}")
            obs.audit_log("avif.upload", str(path), "rejected", {"reason": str(rejected)})
            return ConversionResult(ResultStatus.FAILURE, source, error=rejected)
        if mime == AVIF_SEQUENCE_MIME:
            source = SourceImage.from_path(path, AVIF_MIME, identifier=identifier)
        return self.convert_one(source)

    def _fail(self, source: SourceImage, failure: Failure, target: Optional[ConversionTarget] = None) -> ConversionResult:
        # a freshly written artifact is discarded when the item fails
        if target is not None and target.path != source.path:
            image_store.remove_quietly(target.path)
        return ConversionResult(
            ResultStatus.FAILURE,
            source,
            target_path=target.path if target is not None else None,
            error=failure,
        )

    def _convert(self, source: SourceImage, opts: RunOptions) -> ConversionResult:
        # stage names are checked before any file is touched
        stages = parse_stages(opts.stages)
        if isinstance(stages, Failure):
            return self._fail(source, stages)

        if not image_store.is_readable_file(source.path):
            return self._fail(source, Failure(ErrorKind.SOURCE_UNREADABLE, f"file not found: {source.path}"))

        is_avif = source.mime == AVIF_MIME or mime_for_path(source.path) == AVIF_MIME
        if is_avif and not opts.optimize_avif:
            target: Union[ConversionTarget, Failure] = ConversionTarget(path=source.path, quality=opts.quality)
        else:
            target = self.transcoder.transcode(source.path, opts.quality)
        if isinstance(target, Failure):
            return self._fail(source, target)

        warnings: List[str] = []
        geometry_changed = False
        if stages:
            enhanced = self._enhance(target, stages, warnings)
            if isinstance(enhanced, Failure):
                return self._fail(source, enhanced, target)
            geometry_changed = enhanced

        record = self._build_record(source, target, geometry_changed)
        record = self.resolver.resolve(target.path, record)

        result = ConversionResult(ResultStatus.SUCCESS, source, target_path=target.path, warnings=warnings)
        if opts.cdn_enabled:
            published = self._publish(target.path)
            if isinstance(published, Failure):
                result.cdn_error = published
                obs.metrics_inc("orchestrator.cdn.failed")
                logger.warning(f"CDN push failed for {target.path}: {published}")
            else:
                result.cdn_location = published
                url = remote_url(published)
                if url:
                    record["cdn_url"] = url

        if opts.webp_fallback:
            written = webp_fallback.write_webp_sibling(target.path, opts.webp_quality)
            if isinstance(written, Failure):
                warnings.append(f"webp fallback not written: {written}")
            else:
                record["webp_fallback"] = str(written)

        if self.attachments is not None:
            try:
                self.attachments.set_metadata(source.identifier, record)
            except Exception as e:
                logger.exception(f"Attachment record update failed for {source.identifier}")
                return self._fail(source, Failure(ErrorKind.WRITE_ERROR, f"attachment record update failed: {e}"), target)

        result.metadata = record
        if opts.delete_originals and target.path != source.path and target.path.is_file():
            if not image_store.remove_quietly(source.path):
                obs.metrics_inc("orchestrator.cleanup.failed")
                warnings.append(f"original not deleted: {source.path}")
        return result

    def _enhance(self, target: ConversionTarget, stages, warnings: List[str]) -> Union[bool, Failure]:
        """Apply stages to the artifact; re-encode only when the buffer changed."""
        try:
            img = image_store.open_image(target.path)
            img.load()
        except Exception as e:
            return Failure(ErrorKind.DECODE_ERROR, f"artifact unreadable for enhancement: {e}")

        report = EnhancementReport()
        try:
            original_size = img.size
            enhanced = self.enhancer.apply(stages, img, report)
            if isinstance(enhanced, Failure):
                return enhanced
            warnings.extend(report.warnings)
            if enhanced is img:
                return False
            new_size = enhanced.size
            try:
                encoded = self.transcoder.encode(enhanced, target.path, target.quality)
            finally:
                enhanced.close()
            if isinstance(encoded, Failure):
                return encoded
            return new_size != original_size
        finally:
            img.close()

    def _build_record(self, source: SourceImage, target: ConversionTarget, geometry_changed: bool) -> Dict[str, Any]:
        existing: Dict[str, Any] = {}
        if self.attachments is not None:
            try:
                existing = self.attachments.get_metadata(source.identifier)
            except Exception:
                logger.exception(f"Attachment record lookup failed for {source.identifier}")
        record = dict(existing)
        record["file"] = str(target.path)
        record["mime"] = AVIF_MIME
        try:
            record["filesize"] = target.path.stat().st_size
        except OSError:
            pass
        if geometry_changed:
            record["width"] = 0
            record["height"] = 0
        return record

    def _publish(self, path: Path):
        retries = int(self.settings.CDN_RETRIES)
        if retries <= 0:
            return self.publisher.publish(path)

        def attempt():
            res = self.publisher.publish(path)
            if isinstance(res, Failure) and _is_retryable(res):
                raise _TransientPublishFailure(res)
            return res

        try:
            return resilience_utils.retry_sync(
                attempt,
                retries=retries,
                backoff=self.retry_backoff,
                breaker=resilience_utils.get_circuit_breaker("cdn_publish"),
            )
        except _TransientPublishFailure as e:
            return e.failure
        except resilience_utils.CircuitBreakerOpen as e:
            return Failure(ErrorKind.TRANSPORT_ERROR, str(e))

    # --- batch ---
    def _candidates(self, candidate_selector: Optional[CandidateSelector]) -> List[SourceImage]:
        if candidate_selector is None:
            if self.enumerator is None:
                raise ValueError("no candidate selector given and no media enumerator configured")
            items = self.enumerator.list_candidates(SOURCE_MIMES)
        elif callable(candidate_selector):
            items = candidate_selector()
        else:
            items = candidate_selector

        unique: List[SourceImage] = []
        seen = set()
        for item in items:
            key = str(Path(item.path).resolve())
            if key in seen:
                logger.debug(f"Skipping duplicate candidate {item.path}")
                continue
            seen.add(key)
            unique.append(item)
        return unique

    @staticmethod
    def _claim_targets(candidates: List[SourceImage]) -> List[Optional[Failure]]:
        """One entry per candidate: a Failure when an earlier candidate already owns its .avif path."""
        owners: Dict[Path, SourceImage] = {}
        clashes: List[Optional[Failure]] = []
        for item in candidates:
            target = avif_target_path(item.path).resolve()
            owner = owners.setdefault(target, item)
            if owner is item:
                clashes.append(None)
            else:
                clashes.append(Failure(
                    ErrorKind.WRITE_ERROR,
                    f"target {target.name} already claimed by {owner.identifier} ({owner.path.name})",
                ))
        return clashes

    def _process(
        self, source: SourceImage, opts: RunOptions, stats: BatchStats, clash: Optional[Failure] = None
    ) -> Optional[ConversionResult]:
        if self.cancel_event.is_set():
            stats.cancelled = True
            return None
        stats.mark_attempt()
        if clash is not None:
            logger.error(f"AVIF conversion skipped for {source.identifier}: {clash}")
            obs.metrics_inc("orchestrator.item.failed")
            obs.audit_log("avif.convert", str(source.path), "failure", {"reason": str(clash)})
            result = ConversionResult(
                ResultStatus.FAILURE, source, target_path=avif_target_path(source.path), error=clash
            )
        else:
            result = self.convert_one(source, opts)
        stats.mark_result(result)
        return result

    def run_batch(self, candidate_selector: Optional[CandidateSelector] = None, max_workers: Optional[int] = None) -> BatchStats:
        """Convert every candidate; always completes and returns the run's counters."""
        stats = BatchStats()
        self.last_stats = stats
        opts = self.run_options()
        candidates = self._candidates(candidate_selector)
        clashes = self._claim_targets(candidates)
        workers = max(1, int(max_workers or self.settings.MAX_WORKERS))
        total = len(candidates)
        logger.info(f"Batch converting {total} candidates (workers={workers}, quality={opts.quality})")
        start = time.monotonic()

        if workers == 1:
            for i, (source, clash) in enumerate(zip(candidates, clashes), start=1):
                logger.debug(f"Processing {i}/{total}: {source.identifier}")
                if self._process(source, opts, stats, clash) is None:
                    break
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="avif-batch") as ex:
                futures = [
                    ex.submit(self._process, source, opts, stats, clash) for source, clash in zip(candidates, clashes)
                ]
                for f in futures:
                    f.result()

        elapsed = time.monotonic() - start
        logger.info(f"{stats.summary()} in {elapsed:.2f}s")
        obs.audit_log("avif.batch", "media_library", "cancelled" if stats.cancelled else "complete", stats.as_dict())
        return stats

    def cancel(self) -> None:
        self.cancel_event.set()

    def purge(self, urls: Union[str, Iterable[str]]):
        return self.publisher.invalidate(urls)


def build_local_converter(
    settings: Optional[AvifSettings] = None,
    media_root: Optional[Union[str, Path]] = None,
) -> BatchConverter:
    """Wire a converter to the local filesystem media library."""
    s = settings or get_settings()
    library = LocalMediaLibrary(root=media_root or s.MEDIA_ROOT)
    return BatchConverter(settings=s, enumerator=library, attachments=library, options=library)


# --- Health check ---
def health_check(settings: Optional[AvifSettings] = None) -> Dict[str, Any]:
    s = settings or get_settings()
    report: Dict[str, Any] = {"status": "healthy", "checks": {}, "version": "avif-backend-1", "timestamp": time.time()}

    if not image_store.pillow_available():
        report["checks"]["pillow"] = {"status": "unavailable"}
        report["status"] = "unhealthy"
    else:
        report["checks"]["pillow"] = {"status": "available"}

    if image_store.avif_supported():
        report["checks"]["avif_codec"] = {"status": "available"}
    else:
        report["checks"]["avif_codec"] = {"status": "unavailable", "detail": "Pillow was built without AVIF support"}
        report["status"] = "unhealthy"

    creds = CdnCredentials(s.CDN_URL or "", s.CDN_API_KEY or "", s.CDN_ZONE_ID or "")
    if not s.CDN_ENABLED:
        report["checks"]["cdn"] = {"status": "disabled"}
    elif creds.is_complete():
        report["checks"]["cdn"] = {"status": "configured"}
    else:
        report["checks"]["cdn"] = {"status": "misconfigured"}
        if report["status"] == "healthy":
            report["status"] = "degraded"

    report["checks"]["circuit_breakers"] = resilience_utils.list_circuit_breakers()
    return report


# --- CLI ---
def cli_entry(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="AVIF batch converter")
    parser.add_argument("--mode", choices=["batch", "single", "purge", "health"], default="batch")
    parser.add_argument("--file", help="Source file path for single mode")
    parser.add_argument("--mime", help="Declared mime for single mode (guessed from extension if omitted)")
    parser.add_argument("--url", action="append", default=[], help="URL to purge (repeatable)")
    parser.add_argument("--media-root", help="Uploads directory scanned in batch mode")
    parser.add_argument("--quality", type=int, help="Override compression quality")
    parser.add_argument("--workers", type=int, help="Worker threads for batch mode")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    settings = get_settings()
    obs.configure_logging("DEBUG" if args.verbose else settings.LOG_LEVEL)
    start = time.monotonic()
    exit_code = 0
    try:
        converter = build_local_converter(settings, media_root=args.media_root)
        if args.quality is not None and converter.options is not None:
            converter.options = _QualityOverride(converter.options, args.quality)

        if args.mode == "batch":
            stats = converter.run_batch(max_workers=args.workers)
            logger.info(stats.summary())
            exit_code = 0 if stats.failed == 0 else 1
        elif args.mode == "single":
            if not args.file:
                logger.error("--file is required for single mode")
                exit_code = 2
            else:
                mime = args.mime or mime_for_path(args.file) or ""
                result = converter.handle_upload(args.file, mime)
                if result.ok:
                    logger.info(f"Single converted -> {result.target_path}")
                else:
                    logger.error(f"Single conversion failed: {result.error}")
                    exit_code = 1
        elif args.mode == "purge":
            if not args.url:
                logger.error("--url is required for purge mode")
                exit_code = 2
            else:
                res = converter.purge(args.url)
                if isinstance(res, Failure):
                    logger.error(f"Purge failed: {res}")
                    exit_code = 1
        else:
            report = health_check(settings)
            logger.info(f"Health: {report['status']} {report['checks']}")
            exit_code = 0 if report["status"] != "unhealthy" else 1
    except Exception:
        logger.exception("CLI execution error")
        exit_code = 1
    finally:
        elapsed = time.monotonic() - start
        logger.info(f"CLI finished in {elapsed:.2f}s with exit_code={exit_code}")
        sys.exit(exit_code)


class _QualityOverride:
    """Option store view that pins compression_quality (CLI --quality)."""

    def __init__(self, inner: OptionStore, quality: int) -> None:
        self._inner = inner
        self._quality = clamp_quality(quality)

    def get_option(self, key: str, default: Any = None) -> Any:
        if key == "compression_quality":
            return self._quality
        return self._inner.get_option(key, default)

    def set_option(self, key: str, value: Any) -> None:
        self._inner.set_option(key, value)


if __name__ == "__main__":
    cli_entry()


__all__ = [
    "BatchConverter",
    "RunOptions",
    "validate_upload",
    "build_local_converter",
    "health_check",
    "cli_entry",
]
