# ================================================================
#  CDN PUBLISHER : push artifacts to a zone and purge cached URLs
#  -----------------------------------
#  • POST {base}/api/v1/zones/{zone}/upload  (raw body, bearer auth)
#  • POST {base}/api/v1/zones/{zone}/purge   ({"files": [...]})
#  • Fails closed on incomplete credentials: no request is sent
#  • No retries here; retry policy belongs to the orchestrator
# ================================================================

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import requests

from avif_backend.services import image_store
from avif_backend.services import observability_utils as obs
from avif_backend.services.models import CdnCredentials
from avif_backend.services.results import ErrorKind, Failure

logger = obs.get_logger("avif_backend.services.cdn_publisher")

DEFAULT_TIMEOUT = 30.0


class CdnPublisher:
    def __init__(
        self,
        credentials: CdnCredentials,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.credentials = credentials
        self.timeout = float(timeout)
        self._session = session or requests.Session()

    # --- URLs and headers ---
    def _zone_url(self, action: str) -> str:
        base = self.credentials.base_url.strip().rstrip("/")
        return f"{base}/api/v1/zones/{self.credentials.zone_id.strip()}/{action}"

    def _headers(self, content_type: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.credentials.api_key.strip()}",
            "Content-Type": content_type,
            "Accept": "application/json",
        }

    def _check_credentials(self, action: str) -> Optional[Failure]:
        if self.credentials.is_complete():
            return None
        logger.error(f"CDN {action} refused: missing base URL, API key or zone id")
        obs.metrics_inc(f"cdn.{action}.invalid_credentials")
        return Failure(ErrorKind.INVALID_CREDENTIALS, "invalid or missing CDN credentials")

    def _post(self, action: str, **kwargs: Any) -> Union[Dict[str, Any], Failure]:
        url = self._zone_url(action)
        try:
            response = self._session.post(url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.error(f"CDN {action} transport error for {url}: {e}")
            obs.metrics_inc(f"cdn.{action}.transport_error")
            return Failure(ErrorKind.TRANSPORT_ERROR, str(e))

        if not 200 <= response.status_code < 300:
            logger.error(f"CDN {action} failed with status {response.status_code}")
            obs.metrics_inc(f"cdn.{action}.remote_error")
            return Failure(
                ErrorKind.REMOTE_ERROR,
                f"CDN request failed with status: {response.status_code}",
                status_code=response.status_code,
            )

        obs.metrics_inc(f"cdn.{action}.success")
        try:
            body = response.json()
        except ValueError:
            return {"raw": response.text}
        return body if isinstance(body, dict) else {"data": body}

    # --- Public API ---
    def publish(self, file_path: Union[str, Path]) -> Union[Dict[str, Any], Failure]:
        """Upload the whole file in one request. Returns the CDN's JSON body."""
        refused = self._check_credentials("upload")
        if refused is not None:
            return refused

        path = Path(file_path)
        try:
            data = image_store.read_bytes(path)
        except OSError as e:
            logger.error(f"CDN upload: cannot read {path}: {e}")
            return Failure(ErrorKind.SOURCE_UNREADABLE, f"file not found or not readable: {path}")

        headers = self._headers("application/octet-stream")
        headers["X-File-Name"] = path.name
        result = self._post("upload", data=data, headers=headers)
        if not isinstance(result, Failure):
            obs.audit_log("cdn.upload", str(path), "success", {"bytes": len(data)})
        return result

    def invalidate(self, urls: Union[str, Iterable[str]]) -> Union[Dict[str, Any], Failure]:
        """Purge one or many URLs in a single batched request."""
        refused = self._check_credentials("purge")
        if refused is not None:
            return refused

        raw: List[str] = [urls] if isinstance(urls, str) else list(urls)
        files = [requests.utils.requote_uri(u.strip()) for u in raw if u and u.strip()]
        if not files:
            logger.debug("CDN purge called without URLs; nothing to do")
            return {"files": []}

        result = self._post("purge", data=json.dumps({"files": files}), headers=self._headers("application/json"))
        if not isinstance(result, Failure):
            obs.audit_log("cdn.purge", self.credentials.zone_id, "success", {"files": len(files)})
        return result

    def close(self) -> None:
        self._session.close()


def remote_url(response: Dict[str, Any]) -> Optional[str]:
    """Best-effort extraction of the published URL from an upload response."""
    for key in ("url", "cdn_url", "location"):
        value = response.get(key)
        if isinstance(value, str) and value:
            return value
    return None


__all__ = ["CdnPublisher", "remote_url", "DEFAULT_TIMEOUT"]
