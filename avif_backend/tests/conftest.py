"""avif_backend/tests/conftest.py
Shared test configuration:
 - repo root on sys.path
 - settings cache, metrics and circuit breakers reset per test
 - small image factories and the AVIF-capability skip marker
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path

import pytest

# Ensure repo root is on sys.path
ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from avif_backend.services import image_store, observability_utils, resilience_utils, settings


requires_avif = pytest.mark.skipif(
    not image_store.avif_supported(), reason="Pillow built without AVIF codec"
)


@pytest.fixture(scope="session", autouse=True)
def configure_test_logging():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")


@pytest.fixture(autouse=True)
def isolated_state(monkeypatch):
    """Fresh settings, metrics and breakers for every test; no CDN from the host env."""
    for key in ("CDN_ENABLED", "CDN_URL", "CDN_API_KEY", "CDN_ZONE_ID", "CDN_RETRIES", "MAX_WORKERS", "ENABLE_AI", "API_TOKEN"):
        monkeypatch.delenv(key, raising=False)
    settings.reset_cached_settings()
    observability_utils.reset_metrics()
    resilience_utils.reset_all_circuit_breakers()
    yield
    settings.reset_cached_settings()


def make_image(path: Path, size=(64, 48), color=(200, 40, 40), fmt=None, mode="RGB") -> Path:
    """Write a solid-colour image; format follows the suffix unless given."""
    pytest.importorskip("PIL", reason="Pillow required for image tests")
    from PIL import Image

    path.parent.mkdir(parents=True, exist_ok=True)
    fill = color if mode == "RGB" else color + (128,)
    img = Image.new(mode, size, fill)
    img.save(path, format=fmt)
    img.close()
    return path


def make_corrupt(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\xff\xd8\xff\xe0not really a jpeg")
    return path
