"""
Test Suite : Format Transcoder
------------------------------
Covers JPEG/PNG/WebP → AVIF, the dimension ceiling, EXIF stripping,
AVIF re-compression and the typed failure kinds.
"""

from pathlib import Path

import pytest

pytest.importorskip("PIL", reason="Pillow required for image tests")
from PIL import Image

from avif_backend.services import image_store
from avif_backend.services import transcoder as tc
from avif_backend.services.results import ErrorKind, Failure

from conftest import make_corrupt, make_image, requires_avif


@pytest.fixture
def transcoder():
    return tc.Transcoder()


# --- Successful conversions --------------------------------------------------

@requires_avif
@pytest.mark.parametrize("name", ["photo.jpg", "logo.png", "banner.webp"])
def test_transcode_produces_avif_with_same_dimensions(tmp_path, transcoder, name):
    src = make_image(tmp_path / name, size=(80, 60))
    result = transcoder.transcode(src, 80)

    assert not isinstance(result, Failure)
    assert result.path == tmp_path / (Path(name).stem + ".avif")
    assert result.quality == 80
    with Image.open(result.path) as out:
        assert out.format == "AVIF"
        assert out.size == (80, 60)


@requires_avif
def test_transcode_keeps_alpha(tmp_path, transcoder):
    src = make_image(tmp_path / "alpha.png", mode="RGBA")
    result = transcoder.transcode(src, 70)
    assert not isinstance(result, Failure)
    with Image.open(result.path) as out:
        assert "A" in out.getbands()


@requires_avif
def test_transcode_strips_exif(tmp_path, transcoder):
    src = tmp_path / "exif.jpg"
    img = Image.new("RGB", (32, 32), (10, 20, 30))
    exif = Image.Exif()
    exif[0x010F] = "CameraMaker"
    img.save(src, format="JPEG", exif=exif.tobytes())
    img.close()

    result = transcoder.transcode(src, 80)
    assert not isinstance(result, Failure)
    with Image.open(result.path) as out:
        assert 0x010F not in out.getexif()


@requires_avif
def test_recompressing_avif_stays_within_size_tolerance(tmp_path, transcoder):
    src = tmp_path / "gradient.png"
    img = Image.linear_gradient("L").convert("RGB").resize((256, 256))
    img.save(src)
    img.close()

    first = transcoder.transcode(src, 80)
    assert not isinstance(first, Failure)
    first_size = first.path.stat().st_size

    second = transcoder.transcode(first.path, 80)
    assert not isinstance(second, Failure)
    assert second.path == first.path
    second_size = second.path.stat().st_size
    assert abs(second_size - first_size) <= first_size * tc.ROUNDTRIP_SIZE_TOLERANCE


@requires_avif
@pytest.mark.parametrize("quality,expected", [(0, 1), (-5, 1), (150, 100), ("junk", 100)])
def test_quality_is_clamped(tmp_path, transcoder, quality, expected):
    src = make_image(tmp_path / "q.png", size=(16, 16))
    result = transcoder.transcode(src, quality)
    assert not isinstance(result, Failure)
    assert result.quality == expected


# --- Failures ----------------------------------------------------------------

@requires_avif
def test_dimension_exceeded_writes_nothing(tmp_path, transcoder):
    src = make_image(tmp_path / "wide.png", size=(8193, 1))
    result = transcoder.transcode(src, 80)

    assert isinstance(result, Failure)
    assert result.kind is ErrorKind.DIMENSION_EXCEEDED
    assert not (tmp_path / "wide.avif").exists()


@requires_avif
def test_exactly_max_dimension_is_allowed(tmp_path):
    small_cap = tc.Transcoder(max_dimension=64)
    src = make_image(tmp_path / "edge.png", size=(64, 10))
    assert not isinstance(small_cap.transcode(src, 80), Failure)
    src2 = make_image(tmp_path / "over.png", size=(65, 10))
    assert small_cap.transcode(src2, 80).kind is ErrorKind.DIMENSION_EXCEEDED


@requires_avif
def test_decompression_bomb_is_dimension_exceeded(tmp_path, transcoder, monkeypatch):
    # shrink Pillow's pixel guard so a small file trips it like a 20000x20000 one would
    src = make_image(tmp_path / "bomb.png", size=(40, 40))
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)

    result = transcoder.transcode(src, 80)

    assert isinstance(result, Failure)
    assert result.kind is ErrorKind.DIMENSION_EXCEEDED
    assert not (tmp_path / "bomb.avif").exists()


def test_missing_source_is_unreadable(tmp_path, transcoder):
    result = transcoder.transcode(tmp_path / "nope.jpg", 80)
    assert isinstance(result, Failure)
    assert result.kind is ErrorKind.SOURCE_UNREADABLE


@requires_avif
def test_corrupt_source_is_decode_error(tmp_path, transcoder):
    src = make_corrupt(tmp_path / "broken.jpg")
    result = transcoder.transcode(src, 80)
    assert result.kind is ErrorKind.DECODE_ERROR
    assert not (tmp_path / "broken.avif").exists()


@requires_avif
def test_gif_is_unsupported_format(tmp_path, transcoder):
    src = make_image(tmp_path / "anim.gif", size=(8, 8))
    result = transcoder.transcode(src, 80)
    assert result.kind is ErrorKind.UNSUPPORTED_FORMAT


def test_missing_codec_is_encode_error(tmp_path, transcoder, monkeypatch):
    src = make_image(tmp_path / "plain.png", size=(8, 8))
    monkeypatch.setattr(image_store, "avif_supported", lambda: False)
    result = transcoder.transcode(src, 80)
    assert result.kind is ErrorKind.ENCODE_ERROR
    assert not (tmp_path / "plain.avif").exists()


@requires_avif
def test_write_failure_is_write_error(tmp_path, transcoder, monkeypatch):
    src = make_image(tmp_path / "w.png", size=(8, 8))

    def boom(path, data):
        raise OSError("disk full")

    monkeypatch.setattr(image_store, "atomic_write_bytes", boom)
    result = transcoder.transcode(src, 80)
    assert result.kind is ErrorKind.WRITE_ERROR
