"""
Test Suite : Batch Converter / Orchestrator
-------------------------------------------
Most tests drive the orchestrator with a fake transcoder so that the batch
rules (counters, isolation, cleanup, CDN tolerance, cancellation, workers)
are checked independently of the AVIF codec. End-to-end tests at the bottom
use the real codec and skip when it is missing.
"""

import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from avif_backend.services import image_store
from avif_backend.services import observability_utils as obs
from avif_backend.services import orchestrator as orch
from avif_backend.services.image_store import ImageInfo
from avif_backend.services.media_library import InMemoryOptionStore, LocalMediaLibrary
from avif_backend.services.metadata_resolver import MetadataResolver
from avif_backend.services.models import ConversionTarget, SourceImage, avif_target_path
from avif_backend.services.results import ErrorKind, Failure
from avif_backend.services.settings import AvifSettings

from conftest import make_image, requires_avif


class FakeTranscoder:
    """Writes a placeholder .avif; files whose content starts with b'corrupt' fail to decode."""

    def __init__(self, on_call=None):
        self.calls = []
        self.on_call = on_call
        self._lock = threading.Lock()

    def transcode(self, source_path, quality):
        with self._lock:
            self.calls.append(Path(source_path))
            if self.on_call:
                self.on_call(len(self.calls))
        src = Path(source_path)
        if src.read_bytes().startswith(b"corrupt"):
            return Failure(ErrorKind.DECODE_ERROR, "bad data")
        target = avif_target_path(src)
        target.write_bytes(b"fake-avif")
        return ConversionTarget(path=target, quality=quality)


class DictAttachments:
    def __init__(self):
        self.records = {}

    def get_metadata(self, identifier):
        return dict(self.records.get(identifier, {}))

    def set_metadata(self, identifier, record):
        self.records[identifier] = dict(record)


def _settings(**overrides):
    base = dict(
        COMPRESSION_QUALITY=80,
        ENABLE_AI=False,
        CDN_ENABLED=False,
        DELETE_ORIGINALS=True,
        MAX_WORKERS=1,
        CDN_RETRIES=0,
    )
    base.update(overrides)
    return AvifSettings(**base)


def _sources(tmp_path, count=5, corrupt=()):
    items = []
    for i in range(1, count + 1):
        p = tmp_path / f"img{i}.jpg"
        p.write_bytes(b"corrupt" if i in corrupt else b"jpeg-bytes")
        items.append(SourceImage.from_path(p, "image/jpeg", identifier=f"id{i}"))
    return items


def _converter(settings=None, **kwargs):
    kwargs.setdefault("transcoder", FakeTranscoder())
    kwargs.setdefault("resolver", MetadataResolver(prober=lambda p: ImageInfo(10, 8, "image/avif", 9)))
    kwargs.setdefault("publisher", MagicMock())
    kwargs.setdefault("attachments", DictAttachments())
    return orch.BatchConverter(settings=settings or _settings(), **kwargs)


# --- Batch counters and isolation --------------------------------------------

def test_batch_counts_and_continues_past_failures(tmp_path):
    sources = _sources(tmp_path, 5, corrupt=(2, 4))
    conv = _converter()

    stats = conv.run_batch(sources)

    assert (stats.processed, stats.success, stats.failed) == (5, 3, 2)
    assert [f["id"] for f in stats.failures] == ["id2", "id4"]
    assert stats.summary() == "Conversion complete: 5 processed, 3 successful, 2 failed"
    assert conv.last_stats is stats
    for i in (1, 3, 5):
        assert (tmp_path / f"img{i}.avif").exists()
        assert not (tmp_path / f"img{i}.jpg").exists()
    for i in (2, 4):
        assert not (tmp_path / f"img{i}.avif").exists()
        assert (tmp_path / f"img{i}.jpg").exists()
    snap = obs.metrics_snapshot()
    assert snap["orchestrator.item.succeeded"] == 3
    assert snap["orchestrator.item.failed"] == 2


def test_attachment_record_is_updated(tmp_path):
    [source] = _sources(tmp_path, 1)
    attachments = DictAttachments()
    attachments.records["id1"] = {"file": str(source.path), "mime": "image/jpeg", "alt": "kept"}
    conv = _converter(attachments=attachments)

    result = conv.convert_one(source)

    record = attachments.records["id1"]
    assert result.ok
    assert record["file"] == str(tmp_path / "img1.avif")
    assert record["mime"] == "image/avif"
    assert record["filesize"] == len(b"fake-avif")
    assert record["alt"] == "kept"
    assert record["width"] == 10 and record["height"] == 8


def test_deletion_failure_keeps_success(tmp_path, monkeypatch):
    [source] = _sources(tmp_path, 1)
    monkeypatch.setattr(image_store, "remove_quietly", lambda path: False)

    result = _converter().convert_one(source)

    assert result.ok
    assert any("original not deleted" in w for w in result.warnings)
    assert obs.metrics_snapshot()["orchestrator.cleanup.failed"] == 1


def test_originals_kept_when_deletion_disabled(tmp_path):
    [source] = _sources(tmp_path, 1)
    result = _converter(_settings(DELETE_ORIGINALS=False)).convert_one(source)
    assert result.ok
    assert source.path.exists()


def test_unexpected_exception_becomes_internal_failure(tmp_path):
    [source] = _sources(tmp_path, 1)
    broken = MagicMock()
    broken.transcode.side_effect = RuntimeError("kaboom")

    stats = _converter(transcoder=broken).run_batch([source])

    assert stats.failed == 1
    assert "InternalError" in stats.failures[0]["reason"]


def test_record_update_failure_fails_item_and_removes_artifact(tmp_path):
    [source] = _sources(tmp_path, 1)
    attachments = MagicMock()
    attachments.get_metadata.return_value = {}
    attachments.set_metadata.side_effect = OSError("read-only index")

    result = _converter(attachments=attachments).convert_one(source)

    assert not result.ok
    assert result.error.kind is ErrorKind.WRITE_ERROR
    assert not (tmp_path / "img1.avif").exists()
    assert source.path.exists()


def test_unreadable_source(tmp_path):
    ghost = SourceImage(identifier="ghost", path=tmp_path / "ghost.jpg", mime="image/jpeg")
    transcoder = FakeTranscoder()
    result = _converter(transcoder=transcoder).convert_one(ghost)
    assert result.error.kind is ErrorKind.SOURCE_UNREADABLE
    assert transcoder.calls == []


# --- Enhancement stage selection ---------------------------------------------

def test_unknown_enhancement_fails_before_any_io(tmp_path):
    [source] = _sources(tmp_path, 1)
    transcoder = FakeTranscoder()
    conv = _converter(
        _settings(ENABLE_AI=True, AI_STAGES="noise_reduction,deblur"),
        transcoder=transcoder,
    )

    result = conv.convert_one(source)

    assert result.error.kind is ErrorKind.UNSUPPORTED_ENHANCEMENT
    assert transcoder.calls == []
    assert source.path.exists()


def test_run_options_prefer_option_store(tmp_path):
    options = InMemoryOptionStore(
        {"compression_quality": "55", "enable_ai": "1", "ai_stages": "color_enhancement", "cdn_enabled": True}
    )
    opts = _converter(options=options).run_options()
    assert opts.quality == 55
    assert opts.stages == ["color_enhancement"]
    assert opts.cdn_enabled is True
    assert opts.delete_originals is True


def test_run_options_ignore_stages_when_ai_disabled():
    opts = _converter(_settings(ENABLE_AI=False, AI_STAGES="super_resolution")).run_options()
    assert opts.stages == []


# --- CDN ---------------------------------------------------------------------

def test_cdn_failure_does_not_fail_conversion(tmp_path):
    sources = _sources(tmp_path, 2)
    publisher = MagicMock()
    publisher.publish.side_effect = [
        Failure(ErrorKind.REMOTE_ERROR, "nope", status_code=500),
        {"url": "https://cdn.example.com/img2.avif"},
    ]
    attachments = DictAttachments()
    conv = _converter(_settings(CDN_ENABLED=True), publisher=publisher, attachments=attachments)

    stats = conv.run_batch(sources)

    assert (stats.processed, stats.success, stats.failed, stats.cdn_failed) == (2, 2, 0, 1)
    assert "cdn_url" not in attachments.records["id1"]
    assert attachments.records["id2"]["cdn_url"] == "https://cdn.example.com/img2.avif"
    assert publisher.publish.call_args_list[0].args[0] == tmp_path / "img1.avif"


def test_cdn_not_called_when_disabled(tmp_path):
    [source] = _sources(tmp_path, 1)
    publisher = MagicMock()
    _converter(publisher=publisher).convert_one(source)
    publisher.publish.assert_not_called()


def test_cdn_retry_policy_retries_transient_failures(tmp_path):
    [source] = _sources(tmp_path, 1)
    publisher = MagicMock()
    publisher.publish.side_effect = [
        Failure(ErrorKind.TRANSPORT_ERROR, "reset"),
        Failure(ErrorKind.REMOTE_ERROR, "unavailable", status_code=503),
        {"url": "https://cdn.example.com/img1.avif"},
    ]
    conv = _converter(_settings(CDN_ENABLED=True, CDN_RETRIES=2), publisher=publisher, retry_backoff=0)

    result = conv.convert_one(source)

    assert result.ok and result.cdn_error is None
    assert publisher.publish.call_count == 3


def test_cdn_retry_policy_does_not_retry_client_errors(tmp_path):
    [source] = _sources(tmp_path, 1)
    publisher = MagicMock()
    publisher.publish.return_value = Failure(ErrorKind.REMOTE_ERROR, "forbidden", status_code=403)
    conv = _converter(_settings(CDN_ENABLED=True, CDN_RETRIES=3), publisher=publisher, retry_backoff=0)

    result = conv.convert_one(source)

    assert result.ok
    assert result.cdn_error.status_code == 403
    assert publisher.publish.call_count == 1


def test_purge_delegates_to_publisher():
    publisher = MagicMock()
    publisher.invalidate.return_value = {"ok": True}
    assert _converter(publisher=publisher).purge(["https://cdn/a.avif"]) == {"ok": True}
    publisher.invalidate.assert_called_once_with(["https://cdn/a.avif"])


# --- Cancellation and workers ------------------------------------------------

def test_cancellation_is_checked_between_items(tmp_path):
    sources = _sources(tmp_path, 5)
    cancel = threading.Event()

    def stop_after_second(n):
        if n == 2:
            cancel.set()

    conv = _converter(transcoder=FakeTranscoder(on_call=stop_after_second), cancel_event=cancel)
    stats = conv.run_batch(sources)

    assert stats.cancelled is True
    assert (stats.processed, stats.success, stats.failed) == (2, 2, 0)
    assert (tmp_path / "img2.avif").exists()
    assert not (tmp_path / "img3.avif").exists()


def test_worker_pool_processes_each_path_once(tmp_path):
    sources = _sources(tmp_path, 6, corrupt=(3,))
    duplicate = SourceImage(identifier="dup", path=sources[0].path, mime="image/jpeg")
    transcoder = FakeTranscoder()
    conv = _converter(_settings(MAX_WORKERS=3), transcoder=transcoder)

    stats = conv.run_batch(sources + [duplicate])

    assert (stats.processed, stats.success, stats.failed) == (6, 5, 1)
    assert sorted(transcoder.calls) == sorted(s.path for s in sources)


@pytest.mark.parametrize("workers", [1, 3])
def test_sources_sharing_a_target_never_overwrite_each_other(tmp_path, workers):
    jpg = tmp_path / "photo.jpg"
    png = tmp_path / "photo.png"
    jpg.write_bytes(b"jpeg-bytes")
    png.write_bytes(b"png-bytes")
    sources = [
        SourceImage.from_path(jpg, "image/jpeg", identifier="jpg"),
        SourceImage.from_path(png, "image/png", identifier="png"),
    ]
    attachments = DictAttachments()
    transcoder = FakeTranscoder()
    conv = _converter(_settings(MAX_WORKERS=workers), transcoder=transcoder, attachments=attachments)

    stats = conv.run_batch(sources)

    assert (stats.processed, stats.success, stats.failed) == (2, 1, 1)
    assert stats.failures[0]["id"] == "png"
    assert "already claimed by jpg" in stats.failures[0]["reason"]
    assert transcoder.calls == [jpg]
    assert not jpg.exists()
    assert png.exists()
    assert attachments.records["jpg"]["file"] == str(tmp_path / "photo.avif")
    assert "png" not in attachments.records


def test_selector_callable_and_enumerator(tmp_path):
    sources = _sources(tmp_path, 2)
    enumerator = MagicMock()
    enumerator.list_candidates.return_value = sources

    assert _converter().run_batch(lambda: sources[:1]).processed == 1
    stats = _converter(enumerator=enumerator).run_batch()
    assert stats.processed == 2
    assert "image/jpeg" in enumerator.list_candidates.call_args.args[0]


def test_run_batch_without_source_raises():
    with pytest.raises(ValueError):
        _converter().run_batch()


# --- AVIF uploads and upload validation --------------------------------------

def test_avif_source_skips_transcode_when_optimization_off(tmp_path):
    src = tmp_path / "already.avif"
    src.write_bytes(b"fake-avif")
    transcoder = FakeTranscoder()
    conv = _converter(_settings(ENABLE_OPTIMIZATION=False), transcoder=transcoder)

    result = conv.convert_one(SourceImage.from_path(src, "image/avif"))

    assert result.ok
    assert result.target_path == src
    assert transcoder.calls == []
    assert src.exists()


def test_validate_upload_rejects_unaccepted_mime(tmp_path):
    p = tmp_path / "doc.pdf"
    p.write_bytes(b"%PDF-1.4")
    failure = orch.validate_upload(p, "application/pdf")
    assert failure.kind is ErrorKind.UNSUPPORTED_FORMAT


def test_validate_upload_rejects_fake_avif(tmp_path):
    pytest.importorskip("PIL")
    p = make_image(tmp_path / "fake.avif", fmt="PNG")
    failure = orch.validate_upload(p, "image/avif")
    assert failure.kind is ErrorKind.UNSUPPORTED_FORMAT


def test_validate_upload_reports_oversized_image(tmp_path, monkeypatch):
    pytest.importorskip("PIL")
    p = make_image(tmp_path / "huge.png", size=(40, 40))
    monkeypatch.setattr(image_store.Image, "MAX_IMAGE_PIXELS", 100)
    failure = orch.validate_upload(p, "image/png")
    assert failure.kind is ErrorKind.DIMENSION_EXCEEDED


def test_handle_upload_rejects_before_conversion(tmp_path):
    p = tmp_path / "notes.txt"
    p.write_text("hello")
    transcoder = FakeTranscoder()
    result = _converter(transcoder=transcoder).handle_upload(p, "text/plain")
    assert not result.ok
    assert transcoder.calls == []


# --- End to end with the real codec ------------------------------------------

@requires_avif
def test_end_to_end_local_library(tmp_path):
    root = tmp_path / "uploads"
    make_image(root / "2025" / "a.jpg", size=(40, 30))
    make_image(root / "2025" / "b.png", size=(20, 20))
    (root / "2025" / "c.jpg").write_bytes(b"corrupt")
    library = LocalMediaLibrary(root=root)
    conv = orch.BatchConverter(
        settings=_settings(),
        enumerator=library,
        attachments=library,
        options=library,
        publisher=MagicMock(),
    )

    stats = conv.run_batch()

    assert (stats.processed, stats.success, stats.failed) == (3, 2, 1)
    record = library.get_metadata("2025/a.jpg")
    assert record["mime"] == "image/avif"
    assert record["width"] == 40 and record["height"] == 30
    assert not (root / "2025" / "a.jpg").exists()
    assert (root / "2025" / "c.jpg").exists()


@requires_avif
def test_end_to_end_same_stem_sources_keep_first_artifact(tmp_path):
    root = tmp_path / "uploads"
    make_image(root / "photo.jpg", size=(10, 10), color=(255, 0, 0))
    make_image(root / "photo.png", size=(20, 30), color=(0, 0, 255))
    library = LocalMediaLibrary(root=root)
    conv = orch.BatchConverter(
        settings=_settings(), enumerator=library, attachments=library, options=library, publisher=MagicMock()
    )

    stats = conv.run_batch()

    assert (stats.processed, stats.success, stats.failed) == (2, 1, 1)
    assert not (root / "photo.jpg").exists()
    assert (root / "photo.png").exists()
    record = library.get_metadata("photo.jpg")
    assert (record["width"], record["height"]) == (10, 10)
    info = image_store.probe(root / "photo.avif")
    assert (info.width, info.height) == (10, 10)
    assert library.get_metadata("photo.png").get("mime") != "image/avif"


@requires_avif
def test_end_to_end_geometry_change_refreshes_dimensions(tmp_path):
    src = make_image(tmp_path / "small.png", size=(16, 12))
    attachments = DictAttachments()
    attachments.records["small"] = {"width": 16, "height": 12}
    conv = orch.BatchConverter(
        settings=_settings(ENABLE_AI=True, AI_STAGES="super_resolution,color_enhancement"),
        attachments=attachments,
        publisher=MagicMock(),
    )

    result = conv.convert_one(SourceImage.from_path(src, "image/png", identifier="small"))

    assert result.ok
    assert attachments.records["small"]["width"] == 32
    assert attachments.records["small"]["height"] == 24
    info = image_store.probe(tmp_path / "small.avif")
    assert (info.width, info.height) == (32, 24)


@requires_avif
def test_end_to_end_webp_fallback(tmp_path):
    src = make_image(tmp_path / "hero.jpg", size=(24, 24))
    conv = orch.BatchConverter(settings=_settings(GENERATE_WEBP_FALLBACK=True), publisher=MagicMock())
    result = conv.convert_one(SourceImage.from_path(src, "image/jpeg"))
    assert result.ok
    assert (tmp_path / "hero.webp").exists()
    assert result.metadata["webp_fallback"] == str(tmp_path / "hero.webp")


# --- Health and CLI ----------------------------------------------------------

def test_health_check_reports_cdn_state():
    report = orch.health_check(_settings(CDN_ENABLED=True, CDN_URL="https://cdn"))
    assert report["checks"]["cdn"]["status"] == "misconfigured"
    assert report["status"] in ("degraded", "unhealthy")

    report = orch.health_check(_settings())
    assert report["checks"]["cdn"]["status"] == "disabled"
    assert "avif_codec" in report["checks"]


def test_cli_single_without_file_exits_2(monkeypatch, tmp_path):
    monkeypatch.setenv("MEDIA_ROOT", str(tmp_path))
    with pytest.raises(SystemExit) as exc:
        orch.cli_entry(["--mode", "single"])
    assert exc.value.code == 2


def test_cli_batch_on_empty_library_exits_0(monkeypatch, tmp_path):
    monkeypatch.setenv("MEDIA_ROOT", str(tmp_path))
    with pytest.raises(SystemExit) as exc:
        orch.cli_entry(["--mode", "batch"])
    assert exc.value.code == 0
