from __future__ import annotations
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional, Tuple
from urllib.parse import urlparse

import httpx

from .errors import UpstreamFailure
from .model.db import (
    Service,
    ORDER_CANCELLED, ORDER_COMPLETED, ORDER_FAILED, ORDER_IN_PROGRESS,
    ORDER_PARTIAL, ORDER_PENDING, ORDER_PROCESSING,
)

logger = logging.getLogger(__name__)

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"

# provider panel status strings -> order status
PROVIDER_STATUSES = {
    "pending": ORDER_PENDING,
    "processing": ORDER_PROCESSING,
    "in progress": ORDER_IN_PROGRESS,
    "inprogress": ORDER_IN_PROGRESS,
    "completed": ORDER_COMPLETED,
    "complete": ORDER_COMPLETED,
    "partial": ORDER_PARTIAL,
    "canceled": ORDER_CANCELLED,
    "cancelled": ORDER_CANCELLED,
    "refunded": ORDER_CANCELLED,
    "failed": ORDER_FAILED,
    "error": ORDER_FAILED,
}

# where provider panels tend to put their service list
SERVICE_LIST_KEYS = (
    "services", "data", "results", "items", "list", "response", "payload",
)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry only when no order can have been placed (the connection never
    came up) or the provider says it is temporarily unavailable.
    """
    max_attempts: int = 3
    backoff: float = 0.5
    retry_statuses: FrozenSet[int] = frozenset({502, 503, 504})

    def delay(self, attempt: int) -> float:
        return self.backoff * attempt


@dataclass
class PlacedOrder:
    response: Any
    provider_order_id: Optional[str]
    attempts: int


# ----------------------------
# Request building
# ----------------------------
def render_request(template: Optional[Dict[str, Any]], target_url: str,
                   quantity: int) -> Dict[str, Any]:
    body: Dict[str, Any] = {}
    for k, v in (template or {}).items():
        if v == "{{quantity}}":
            body[k] = quantity
        elif isinstance(v, str):
            body[k] = (v.replace("{{link}}", target_url)
                        .replace("{{targetUrl}}", target_url)
                        .replace("{{quantity}}", str(quantity)))
        else:
            body[k] = v
    body["link"] = target_url
    body["quantity"] = quantity
    return body


def _content_type(headers: Dict[str, str]) -> str:
    for k, v in headers.items():
        if k.lower() == "content-type":
            return str(v).lower()
    return ""


def _decode(resp: httpx.Response, lenient: bool) -> Any:
    try:
        return resp.json()
    except ValueError:
        if lenient:
            return {"raw": resp.text}
        raise UpstreamFailure(
            "API request failed: invalid JSON response",
            upstream_status=resp.status_code,
        )


def extract_provider_order_id(response: Any) -> Optional[str]:
    if not isinstance(response, dict):
        return None
    for k in ("order", "order_id", "orderId", "id"):
        v = response.get(k)
        if v not in (None, ""):
            return str(v)
    return None


def map_provider_status(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    raw = str(data.get("status") or "").strip().lower().replace("_", " ")
    return PROVIDER_STATUSES.get(raw)


# ----------------------------
# Provider Adapter Interface
# ----------------------------
class ProviderAdapter(ABC):
    @abstractmethod
    async def place_order(self, service: Service, target_url: str,
                          quantity: int) -> PlacedOrder: ...

    @abstractmethod
    async def order_status(self, service: Service,
                           provider_order_id: str) -> Any: ...

    @abstractmethod
    async def fetch_services(self, api_url: str, api_key: str) -> Any: ...


# ----------------------------
# HTTP implementation
# ----------------------------
class HttpProvider(ProviderAdapter):

    def __init__(self, http: httpx.AsyncClient,
                 policy: Optional[RetryPolicy] = None) -> None:
        self.http = http
        self.policy = policy or RetryPolicy()

    async def _send(self, method: str, url: str, headers: Dict[str, str],
                    payload: Dict[str, Any]) -> httpx.Response:
        method = (method or "POST").upper()
        headers = {"Accept": "application/json", **headers}
        if method == "GET":
            return await self.http.request(method, url, params=payload,
                                           headers=headers)
        if _content_type(headers).startswith(FORM_CONTENT_TYPE):
            form = {k: str(v) for k, v in payload.items()}
            return await self.http.request(method, url, data=form,
                                           headers=headers)
        headers.setdefault("Content-Type", "application/json")
        return await self.http.request(method, url, json=payload,
                                       headers=headers)

    async def call(self, method: str, url: str, headers: Dict[str, str],
                   payload: Dict[str, Any],
                   lenient: bool = False) -> Tuple[Any, int]:
        """
        Send one logical request under the retry policy. Returns the
        decoded 2xx body and the number of attempts made; anything else
        ends in UpstreamFailure. A 2xx body that is not JSON fails too,
        unless `lenient`, in which case it comes back as {"raw": text}.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                resp = await self._send(method, url, headers, payload)
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                logger.warning("provider %s unreachable (attempt %d/%d): %s",
                               url, attempt, self.policy.max_attempts, e)
                if attempt < self.policy.max_attempts:
                    await asyncio.sleep(self.policy.delay(attempt))
                    continue
                raise UpstreamFailure(
                    f"API request failed: {e.__class__.__name__}: {e}"
                )
            except httpx.HTTPError as e:
                logger.warning("provider %s request error: %s", url, e)
                raise UpstreamFailure(
                    f"API request failed: {e.__class__.__name__}: {e}"
                )

            status = resp.status_code
            if 200 <= status < 300:
                logger.info("provider %s answered %d (attempt %d)",
                            url, status, attempt)
                return _decode(resp, lenient), attempt

            logger.warning("provider %s answered %d (attempt %d/%d)",
                           url, status, attempt, self.policy.max_attempts)
            if (status in self.policy.retry_statuses
                    and attempt < self.policy.max_attempts):
                await asyncio.sleep(self.policy.delay(attempt))
                continue
            raise UpstreamFailure(
                f"API request failed: {status} {resp.reason_phrase}",
                upstream_status=status,
            )

    async def place_order(self, service: Service, target_url: str,
                          quantity: int) -> PlacedOrder:
        if not service.api_endpoint:
            raise UpstreamFailure("Service has no API endpoint configured")
        payload = render_request(service.request_template, target_url,
                                 quantity)
        data, attempts = await self.call(
            service.api_method or "POST",
            service.api_endpoint,
            dict(service.api_headers or {}),
            payload,
        )
        return PlacedOrder(
            response=data,
            provider_order_id=extract_provider_order_id(data),
            attempts=attempts,
        )

    async def order_status(self, service: Service,
                           provider_order_id: str) -> Any:
        if not service.api_endpoint:
            raise UpstreamFailure("Service has no API endpoint configured")
        payload: Dict[str, Any] = {
            "action": "status",
            "order": provider_order_id,
        }
        api_key = (service.request_template or {}).get("key")
        if api_key:
            payload["key"] = api_key
        data, _ = await self.call(
            service.api_method or "POST",
            service.api_endpoint,
            dict(service.api_headers or {}),
            payload,
        )
        return data

    async def fetch_services(self, api_url: str, api_key: str) -> Any:
        attempts = (
            ("POST", {"Content-Type": FORM_CONTENT_TYPE}),
            ("GET", {}),
        )
        last_error: Optional[UpstreamFailure] = None
        for method, headers in attempts:
            try:
                data, _ = await self.call(
                    method, api_url, headers,
                    {"key": api_key, "action": "services"},
                    lenient=True,
                )
            except UpstreamFailure as e:
                logger.info("service list via %s failed: %s", method,
                            e.message)
                last_error = e
                continue
            if isinstance(data, list) or (
                    isinstance(data, dict) and "raw" not in data):
                return data
            logger.info("service list via %s returned no JSON", method)
        raise UpstreamFailure(
            "All API request formats failed"
            + (f": {last_error.message}" if last_error else "")
        )


# ----------------------------
# Service list formatting
# ----------------------------
def _find_service_list(data: Any, depth: int = 0) -> List[Any]:
    if isinstance(data, list):
        return data
    if not isinstance(data, dict) or depth > 3:
        return []
    for k in SERVICE_LIST_KEYS:
        if isinstance(data.get(k), list):
            return data[k]
    for v in data.values():
        if isinstance(v, dict):
            found = _find_service_list(v, depth + 1)
            if found:
                return found
    return []


def platform_from_url(api_url: str) -> str:
    host = (urlparse(api_url).hostname or api_url).lower()
    parts = [p for p in host.split(".") if p and p != "www"]
    if len(parts) >= 2:
        return parts[-2].capitalize()
    return "External API"


def _first(item: Dict[str, Any], *names: str, default: Any = None) -> Any:
    for n in names:
        v = item.get(n)
        if v not in (None, ""):
            return v
    return default


def _to_int(v: Any, default: int) -> int:
    try:
        return int(float(v))
    except (TypeError, ValueError):
        return default


def format_services(data: Any, api_url: str,
                    api_key: str) -> List[Dict[str, Any]]:
    """Turn a provider's service list into importable service dicts."""
    platform = platform_from_url(api_url)
    out = []
    for i, item in enumerate(_find_service_list(data)):
        if not isinstance(item, dict):
            continue
        sid = _first(item, "service", "id", "service_id", "serviceId",
                     default=str(i + 1))
        name = _first(item, "name", "title", "service_name", "description",
                      default=f"Service {sid}")
        out.append({
            "name": str(name),
            "platform": platform,
            "type": str(_first(item, "type", "category",
                               default="social_media")),
            "isActive": True,
            "apiEndpoint": api_url,
            "apiMethod": "POST",
            "apiHeaders": {"Content-Type": FORM_CONTENT_TYPE},
            "requestTemplate": {
                "key": api_key,
                "action": "add",
                "service": sid,
                "link": "{{link}}",
                "quantity": "{{quantity}}",
            },
            "providerServiceId": str(sid),
            "rate": _first(item, "rate", "price", "cost"),
            "minQuantity": _to_int(_first(item, "min", "minimum"), 1),
            "maxQuantity": _to_int(_first(item, "max", "maximum"), 10000),
        })
    return out
