"""Store client for the Cloudflare Worker database.

The store holds the whole player database as one JSON document: it is read
with a single GET and replaced with a single POST. There is no partial
update.
"""

import hashlib
import json
import logging
import time
from typing import Any, Dict, Optional

import requests

log = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """Reading or writing the remote store failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _should_retry_http(status_code: Optional[int]) -> bool:
    if status_code is None:
        return True
    if status_code == 429:
        return True
    return 500 <= status_code <= 599


def _extract_status_code(exc: Exception) -> Optional[int]:
    resp = getattr(exc, "response", None)
    return getattr(resp, "status_code", None)


def fetch_database(
    url: str,
    *,
    timeout: float,
    max_retries: int,
    retry_backoff_seconds: float,
) -> Dict[str, Any]:
    """GET the entire player database.

    Retries connection errors, 429 and 5xx with exponential backoff.
    Raises ``StoreError`` when the store cannot be read.
    """
    attempt = 0
    while True:
        try:
            resp = requests.get(url, timeout=timeout)
            resp.raise_for_status()
            data = resp.json()
            if not isinstance(data, dict):
                raise StoreError(
                    f"Store returned {type(data).__name__}, expected an object"
                )
            return data
        except requests.exceptions.HTTPError as exc:
            status_code = _extract_status_code(exc)
            if attempt >= max_retries or not _should_retry_http(status_code):
                raise StoreError(
                    f"Failed to fetch database: {status_code}", status_code
                ) from exc
            log.warning("Store read returned %s; retrying", status_code)
        except ValueError as exc:
            # requests' JSONDecodeError is a ValueError
            raise StoreError(f"Store returned invalid JSON: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            if attempt >= max_retries:
                raise StoreError(f"Failed to fetch database: {exc}") from exc
            log.warning("Store read failed (%s); retrying", exc)

        attempt += 1
        backoff = retry_backoff_seconds * (2 ** (attempt - 1))
        time.sleep(backoff)


def push_database(
    url: str,
    data: Dict[str, Any],
    *,
    username: str,
    password: str,
    action: str,
    timeout: float,
) -> Any:
    """POST the entire player database, replacing what the store holds.

    Not retried. Raises ``StoreError`` on a non-2xx status or when the store
    answers ``{"success": false}``.
    """
    body = {
        "username": username,
        "password": password,
        "data": data,
        "action": action,
    }
    try:
        resp = requests.post(url, json=body, timeout=timeout)
    except requests.exceptions.RequestException as exc:
        raise StoreError(f"Failed to update database: {exc}") from exc

    if not 200 <= resp.status_code < 300:
        raise StoreError(
            f"Failed to update database: {resp.status_code}", resp.status_code
        )

    try:
        result = resp.json()
    except ValueError:
        return resp.text

    if isinstance(result, dict) and result.get("success") is False:
        reason = result.get("error") or result.get("message") or "server rejected update"
        raise StoreError(f"Failed to update database: {reason}", resp.status_code)
    return result


def snapshot_digest(data: Any) -> str:
    """SHA-256 of a canonical JSON rendering of ``data``."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
