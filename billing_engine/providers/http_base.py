import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from billing_engine.errors import ProviderRejected, ProviderUnavailable, SignatureInvalid
from billing_engine.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)


def parse_iso(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def hex_hmac_matches(secret: str | None, raw_body: bytes, signature: str | None) -> bool:
    if not secret or not signature:
        return False
    mac = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(mac, signature.strip())


class HttpProviderAdapter(ProviderAdapter):
    """
    Shared plumbing for REST-only providers (no SDK).
    Timeouts, transport errors and 5xx become ProviderUnavailable; 4xx become ProviderRejected.
    """

    def __init__(self, *, api_base: str, api_key: str | None, webhook_secret: str | None,
                 timeout: float = 5.0, transport: httpx.BaseTransport | None = None):
        self._api_base = (api_base or "").rstrip("/")
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}", "Accept": "application/json"}

    def _request(self, method: str, path: str, *, json: Any = None, op: str = "") -> Dict[str, Any]:
        if not self._api_key:
            raise RuntimeError(f"{self.name} API key is not configured")
        url = f"{self._api_base}/{path.lstrip('/')}"
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                resp = client.request(method, url, json=json, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable(f"{self.name} API timeout", provider=self.name, op=op) from exc
        except httpx.RequestError as exc:
            raise ProviderUnavailable(f"{self.name} API unreachable: {exc}", provider=self.name, op=op) from exc

        if resp.status_code >= 500 or resp.status_code == 429:
            raise ProviderUnavailable(f"{self.name} API error {resp.status_code}", provider=self.name, op=op)
        if resp.status_code >= 400:
            detail = resp.text[:255]
            logger.warning("provider.rejected", extra={"provider": self.name, "op": op, "status": resp.status_code})
            raise ProviderRejected(detail or f"{self.name} rejected the request", provider=self.name, op=op,
                                   provider_status=resp.status_code)
        if not resp.content:
            return {}
        return resp.json()

    def _require_hex_signature(self, raw_body: bytes, signature: str | None) -> None:
        if not hex_hmac_matches(self._webhook_secret, raw_body, signature):
            raise SignatureInvalid(f"invalid {self.name} signature", provider=self.name)
