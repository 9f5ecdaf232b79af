"""Cloudflare v4 REST client for the zone/record operations the monitor needs."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from failover.config import CloudflareConfig
from failover.errors import DNSProviderError


logger = structlog.get_logger(__name__)

CLOUDFLARE_API_BASE = "https://api.cloudflare.com/client/v4"
PAGE_SIZE = 100


def _auth_headers(cfg: CloudflareConfig) -> dict[str, str]:
    if cfg.api_token:
        return {"Authorization": f"Bearer {cfg.api_token}"}
    if cfg.api_key and cfg.email:
        return {"X-Auth-Key": cfg.api_key, "X-Auth-Email": cfg.email}
    raise DNSProviderError("cloudflare credentials are not configured")


def _error_message(data: Any, status_code: int) -> str:
    if isinstance(data, dict):
        errors = data.get("errors") or []
        msgs = [
            f"{e.get('code')}: {e.get('message')}" if isinstance(e, dict) else str(e)
            for e in errors
        ]
        if msgs:
            return "; ".join(msgs)
    return f"HTTP {status_code}"


class CloudflareDNS:
    def __init__(
        self,
        cfg: CloudflareConfig,
        *,
        client: httpx.AsyncClient | None = None,
        base_url: str = CLOUDFLARE_API_BASE,
        timeout_seconds: float = 15.0,
    ):
        self._headers = _auth_headers(cfg)
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            if self._client is None:
                async with httpx.AsyncClient() as client:
                    resp = await client.request(
                        method, url, params=params, json=json, headers=self._headers, timeout=self._timeout
                    )
            else:
                resp = await self._client.request(
                    method, url, params=params, json=json, headers=self._headers, timeout=self._timeout
                )
        except httpx.HTTPError as exc:
            raise DNSProviderError(f"{method} {path} failed: {type(exc).__name__}: {exc}") from exc

        try:
            data = resp.json()
        except ValueError:
            data = None
        if resp.status_code >= 400 or not isinstance(data, dict) or not data.get("success", False):
            raise DNSProviderError(f"{method} {path} failed: {_error_message(data, resp.status_code)}")
        return data

    async def _paginate(self, path: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        page = 1
        while True:
            query = dict(params or {})
            query.update({"page": page, "per_page": PAGE_SIZE})
            data = await self._request("GET", path, params=query)
            out.extend(data.get("result") or [])
            info = data.get("result_info") or {}
            total_pages = int(info.get("total_pages") or 1)
            if page >= total_pages:
                return out
            page += 1

    async def list_zones(self) -> list[dict[str, Any]]:
        return await self._paginate("/zones")

    async def list_records(self, zone_id: str, name: str | None = None) -> list[dict[str, Any]]:
        params = {"name": name} if name else None
        return await self._paginate(f"/zones/{zone_id}/dns_records", params)

    async def search_records(self, zone_id: str, query: str) -> list[dict[str, Any]]:
        """Case-insensitive substring match on record name, content or type."""
        q = (query or "").strip().lower()
        records = await self.list_records(zone_id)
        if not q:
            return records
        return [
            r
            for r in records
            if q in str(r.get("name", "")).lower()
            or q in str(r.get("content", "")).lower()
            or q in str(r.get("type", "")).lower()
        ]

    async def create_record(self, zone_id: str, record: dict[str, Any]) -> dict[str, Any]:
        data = await self._request("POST", f"/zones/{zone_id}/dns_records", json=record)
        return data.get("result") or {}

    async def update_record(self, zone_id: str, record_id: str, record: dict[str, Any]) -> dict[str, Any]:
        data = await self._request("PATCH", f"/zones/{zone_id}/dns_records/{record_id}", json=record)
        return data.get("result") or {}

    async def delete_record(self, zone_id: str, record_id: str) -> None:
        await self._request("DELETE", f"/zones/{zone_id}/dns_records/{record_id}")

    async def update_record_by_name(self, zone_id: str, name: str, ip: str, proxied: bool) -> dict[str, Any]:
        """Point the first record named `name` at `ip` as an A record."""
        records = await self.list_records(zone_id, name=name)
        if not records:
            raise DNSProviderError(f"no DNS record found for {name}")
        record_id = records[0].get("id", "")
        result = await self.update_record(
            zone_id,
            record_id,
            {"type": "A", "name": name, "content": ip, "proxied": bool(proxied)},
        )
        logger.info("DNS record updated", zone_id=zone_id, name=name, ip=ip, proxied=bool(proxied))
        return result
