"""
Environment selection and path helpers.

``ENVIRONMENT`` (local_dev / dev / prod) picks which ``.env.<environment>``
file at the repo root is loaded into ``os.environ`` on first import.
``AVIF_ENV_FILE`` points at an explicit file instead.
"""

import logging
import os
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv

_logger = logging.getLogger(__name__)

ENV_FILES = {
    "local_dev": ".env.local_dev",
    "dev": ".env.dev",
    "prod": ".env.prod",
}

# repo root = parent of the avif_backend package
repo_root = Path(__file__).resolve().parents[2]

ENVIRONMENT = (os.getenv("ENVIRONMENT") or "local_dev").strip().lower()


def _env_file_for(environment: str) -> Path:
    explicit = os.getenv("AVIF_ENV_FILE")
    if explicit:
        return Path(explicit).expanduser()
    return repo_root / ENV_FILES.get(environment, ENV_FILES["local_dev"])


def load_environment(environment: Optional[str] = None) -> Optional[Path]:
    """Load the dotenv file for ``environment``; returns the file used, if any."""
    env_file = _env_file_for(environment or ENVIRONMENT)
    if not env_file.is_file():
        _logger.debug("%s not found; using process environment only", env_file)
        return None
    load_dotenv(dotenv_path=env_file, override=True)
    _logger.info("Loaded environment %s from %s", environment or ENVIRONMENT, env_file.name)
    return env_file


load_environment()


def get_environment() -> str:
    return ENVIRONMENT


def get(key: str, default=None) -> Union[str, None]:
    return os.getenv(key, default)


def build_local_path(subpath: str) -> str:
    """Absolute path of ``subpath`` inside the repo."""
    return str(repo_root / subpath)


def get_media_root() -> str:
    """Uploads root scanned by the batch converter (MEDIA_ROOT wins over the repo default)."""
    explicit = get("MEDIA_ROOT")
    if explicit:
        return str(Path(explicit).expanduser().resolve())
    return build_local_path(get("LOCAL_MEDIA_DIR", "media/uploads"))


def get_public_media_base() -> str:
    """
    Public URL prefix under which the media root is served.
    PUBLIC_MEDIA_BASE, then CDN_URL, then the local /media mount.
    """
    for key in ("PUBLIC_MEDIA_BASE", "CDN_URL"):
        value = (get(key) or "").strip().rstrip("/")
        if value:
            return value
    return "http://127.0.0.1:8000/media"
