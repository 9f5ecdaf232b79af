from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Any

import httpx
import structlog
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from failover.actions import DNSFactory, FailoverActions
from failover.config import BootstrapConfig, CloudflareAccount, CloudflareConfig, MonitorConfig
from failover.dns_provider import CloudflareDNS
from failover.engine import Engine
from failover.errors import DNSProviderError, ProbeSetupError, StoreError, UnknownMonitorError
from failover.store import IP_DOWN_EVENTS_MAX, GlobalConfig, IPDownEvent, Store
from failover_api.auth import COOKIE_AUTH_TOKEN, cookie_token, require_login, token_matches
from failover_api.schema import DNSRecordRequest, LoginRequest, RestoreRequest
from failover_api.settings import FailoverSettings


logger = structlog.get_logger(__name__)


def _ok(data: Any = None, msg: str | None = None) -> dict[str, Any]:
    out: dict[str, Any] = {"code": 200}
    if msg is not None:
        out["msg"] = msg
    if data is not None:
        out["data"] = data
    return out


def _error(status_code: int, msg: str) -> JSONResponse:
    return JSONResponse({"code": status_code, "msg": msg}, status_code=status_code)


def _new_id() -> str:
    return str(time.time_ns())


def local_midnight_ms(now: datetime | None = None) -> int:
    now = now or datetime.now()
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return int(start.timestamp() * 1000)


def aggregate_offline_hot(
    events: list[IPDownEvent], *, since_ms: int | None = None, min_count: int = 3
) -> list[dict[str, Any]]:
    """Group today's IP-down events by (monitor, ip, role); keep the repeat offenders.

    `events` must be newest first. Sorted by count, then by most recent event.
    """
    if since_ms is None:
        since_ms = local_midnight_ms()
    agg: dict[tuple[str, str, str], dict[str, Any]] = {}
    for evt in events:
        if evt.timestamp < since_ms:
            break
        key = (evt.monitor_id, evt.ip, evt.role)
        item = agg.get(key)
        if item is None:
            item = {
                "monitor_id": evt.monitor_id,
                "name": evt.name,
                "ip": evt.ip,
                "role": evt.role,
                "count": 0,
                "last_at": 0,
            }
            agg[key] = item
        item["count"] += 1
        item["last_at"] = max(item["last_at"], evt.timestamp)

    hot = [v for v in agg.values() if v["count"] >= min_count]
    hot.sort(key=lambda v: (v["count"], v["last_at"]), reverse=True)
    return hot


def import_bootstrap(store: Store, bootstrap: BootstrapConfig) -> int:
    """Seed an empty store from config.yaml. Returns the number of monitors imported."""
    imported = 0
    if not store.list_monitors() and bootstrap.monitors:
        logger.info("Importing initial monitors from config file", count=len(bootstrap.monitors))
        for m in bootstrap.monitors:
            if not m.id:
                m = m.model_copy(update={"id": _new_id()})
            store.upsert_monitor(m)
            imported += 1
        store.update_global_config(
            GlobalConfig(
                cloudflare=bootstrap.cloudflare,
                dingtalk=bootstrap.dingtalk,
                email=bootstrap.email,
                telegram=bootstrap.telegram,
            )
        )
    if bootstrap.server.auth and not store.has_auth_token():
        store.set_auth_token(bootstrap.server.auth)
    return imported


def create_app(
    settings: FailoverSettings | None = None,
    *,
    store: Store | None = None,
    engine: Engine | None = None,
    actions: FailoverActions | None = None,
    dns_factory: DNSFactory | None = None,
    bootstrap: BootstrapConfig | None = None,
) -> FastAPI:
    settings = settings or FailoverSettings()
    app = FastAPI(title="DNS Failover Monitor", version="0.1.0")
    app.state.settings = settings

    if store is None:
        store = Store(settings.data_path)
        store.load()
    app.state.store = store

    owns_client = dns_factory is None or actions is None or engine is None
    http_client = httpx.AsyncClient() if owns_client else None
    def _default_dns(cfg: CloudflareConfig) -> CloudflareDNS:
        return CloudflareDNS(cfg, client=http_client)

    dns_factory = dns_factory or _default_dns
    if actions is None:
        actions = FailoverActions(store, dns_factory=dns_factory, http_client=http_client)
    if engine is None:
        engine = Engine(actions, http_client=http_client)
    app.state.engine = engine
    app.state.actions = actions
    app.state.started_at = time.time()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_allow_origins),
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.on_event("startup")
    async def _startup() -> None:
        if bootstrap is not None:
            import_bootstrap(store, bootstrap)
        engine.start()
        started = 0
        monitors = store.list_monitors()
        for cfg in monitors:
            try:
                engine.start_monitor(cfg)
                started += 1
            except ProbeSetupError as exc:
                logger.error("Skipping monitor with invalid check target", monitor_id=cfg.id, name=cfg.name, error=str(exc))
        logger.info("Monitors loaded", started=started, total=len(monitors))

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await engine.shutdown()
        if http_client is not None:
            await http_client.aclose()

    # -----------------
    # Error envelope
    # -----------------
    @app.exception_handler(StarletteHTTPException)
    async def _http_error(req: Request, exc: StarletteHTTPException) -> JSONResponse:
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def _validation_error(req: Request, exc: RequestValidationError) -> JSONResponse:
        parts = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
            parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
        return _error(400, "; ".join(parts) or "invalid request")

    @app.exception_handler(ProbeSetupError)
    async def _probe_setup_error(req: Request, exc: ProbeSetupError) -> JSONResponse:
        return _error(400, str(exc))

    @app.exception_handler(UnknownMonitorError)
    async def _unknown_monitor(req: Request, exc: UnknownMonitorError) -> JSONResponse:
        return _error(404, str(exc))

    @app.exception_handler(DNSProviderError)
    async def _dns_error(req: Request, exc: DNSProviderError) -> JSONResponse:
        logger.warning("DNS provider request failed", path=req.url.path, error=str(exc))
        return _error(500, str(exc))

    @app.exception_handler(StoreError)
    async def _store_error(req: Request, exc: StoreError) -> JSONResponse:
        logger.error("Store write failed", path=req.url.path, error=str(exc))
        return _error(500, str(exc))

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"ok": True, "ts": time.time()}

    # -----------------
    # Auth (no login required)
    # -----------------
    @app.get("/api/auth/status")
    async def auth_status() -> dict[str, Any]:
        has_token = store.has_auth_token()
        return _ok({"has_token": has_token, "need_setup": not has_token})

    @app.get("/api/auth/check")
    async def auth_check(req: Request) -> dict[str, Any]:
        if not store.has_auth_token():
            return _ok({"authenticated": True, "need_setup": True})
        authenticated = token_matches(cookie_token(req), store.get_auth_token())
        return _ok({"authenticated": authenticated, "need_setup": False})

    @app.post("/api/auth/login")
    async def auth_login(body: LoginRequest, response: Response, req: Request) -> dict[str, Any]:
        token = body.token.strip()
        if not token:
            raise HTTPException(status_code=400, detail="token is required")
        if not store.has_auth_token():
            store.set_auth_token(token)
            logger.info("Admin token configured on first login")
        elif not token_matches(token, store.get_auth_token()):
            raise HTTPException(status_code=401, detail="invalid token")
        response.set_cookie(
            COOKIE_AUTH_TOKEN,
            token,
            max_age=settings.cookie_max_age_seconds,
            path="/",
            httponly=True,
            samesite="lax",
            secure=(req.url.scheme == "https"),
        )
        return _ok(msg="login successful")

    @app.post("/api/auth/logout")
    async def auth_logout(response: Response) -> dict[str, Any]:
        response.delete_cookie(COOKIE_AUTH_TOKEN, path="/")
        return _ok(msg="success")

    api = APIRouter(prefix="/api", dependencies=[Depends(require_login)])

    # -----------------
    # Status overview
    # -----------------
    @api.get("/status")
    async def status() -> dict[str, Any]:
        ip_down = store.list_ip_down_events(IP_DOWN_EVENTS_MAX)
        system = {
            "uptime_seconds": int(time.time() - app.state.started_at),
            "monitors": len(engine),
            "monitor_tasks": engine.task_count(),
            "asyncio_tasks": len(asyncio.all_tasks()),
        }
        return _ok(
            {
                "monitors": [s.as_dict() for s in engine.get_status()],
                "history": [e.model_dump() for e in store.list_switch_history(settings.status_history_limit)],
                "system": system,
                "offline_hot": aggregate_offline_hot(ip_down, min_count=settings.offline_hot_min_count),
            }
        )

    # -----------------
    # Zones and records
    # -----------------
    def _dns() -> CloudflareDNS:
        cfg = store.get_cloudflare_config()
        if not cfg.configured:
            raise DNSProviderError("Cloudflare credentials not configured (api_token or api_key+email required)")
        return dns_factory(cfg)

    @api.get("/zones")
    async def list_zones() -> dict[str, Any]:
        return _ok(await _dns().list_zones())

    @api.get("/zones/{zone_id}/records")
    async def list_records(zone_id: str, q: str | None = None) -> dict[str, Any]:
        dns = _dns()
        if q:
            return _ok(await dns.search_records(zone_id, q))
        return _ok(await dns.list_records(zone_id))

    @api.post("/zones/{zone_id}/records")
    async def create_record(zone_id: str, body: DNSRecordRequest) -> dict[str, Any]:
        return _ok(await _dns().create_record(zone_id, body.model_dump(exclude_none=True)))

    @api.put("/zones/{zone_id}/records/{record_id}")
    async def update_record(zone_id: str, record_id: str, body: DNSRecordRequest) -> dict[str, Any]:
        return _ok(await _dns().update_record(zone_id, record_id, body.model_dump(exclude_none=True)))

    @api.delete("/zones/{zone_id}/records/{record_id}")
    async def delete_record(zone_id: str, record_id: str) -> dict[str, Any]:
        await _dns().delete_record(zone_id, record_id)
        return _ok(msg="success")

    # -----------------
    # Monitors
    # -----------------
    def _activate(cfg: MonitorConfig) -> None:
        # Build the prober before persisting so a malformed target is rejected untouched.
        engine.start_monitor(cfg)
        store.upsert_monitor(cfg)

    @api.get("/monitors")
    async def list_monitors() -> dict[str, Any]:
        return _ok([m.model_dump(mode="json") for m in store.list_monitors()])

    @api.post("/monitors")
    async def add_monitor(body: MonitorConfig) -> dict[str, Any]:
        cfg = body if body.id else body.model_copy(update={"id": _new_id()})
        _activate(cfg)
        return _ok({"id": cfg.id}, msg="success")

    @api.put("/monitors/{monitor_id}")
    async def update_monitor(monitor_id: str, body: MonitorConfig) -> dict[str, Any]:
        _activate(body.model_copy(update={"id": monitor_id}))
        return _ok(msg="success")

    @api.delete("/monitors/{monitor_id}")
    async def delete_monitor(monitor_id: str) -> dict[str, Any]:
        store.delete_monitor(monitor_id)
        engine.stop_monitor(monitor_id)
        return _ok(msg="success")

    @api.post("/monitors/{monitor_id}/restore")
    async def restore_monitor(monitor_id: str, body: RestoreRequest | None = None) -> dict[str, Any]:
        cfg = store.get_monitor(monitor_id)
        if cfg is None:
            raise HTTPException(status_code=404, detail="monitor not found")
        if not cfg.zone_id:
            raise HTTPException(status_code=400, detail="zone_id is required")
        try:
            from_ip = engine.force_restore(monitor_id)
        except UnknownMonitorError:
            from_ip = ""
        proxied = body.proxied if body is not None else None
        await actions.manual_restore(cfg, from_ip, proxied)
        return _ok(msg="success")

    # -----------------
    # Global provider settings
    # -----------------
    @api.get("/config")
    async def get_config() -> dict[str, Any]:
        g = store.get_global_config()
        g.cloudflare = store.get_cloudflare_config()
        return _ok(g.model_dump())

    @api.post("/config")
    async def update_config(body: GlobalConfig) -> dict[str, Any]:
        store.update_global_config(body)
        return _ok(msg="success")

    # -----------------
    # Cloudflare accounts
    # -----------------
    @api.get("/cloudflare-accounts")
    async def list_accounts() -> dict[str, Any]:
        accounts, active_index = store.list_cloudflare_accounts()
        return _ok({"accounts": [a.model_dump() for a in accounts], "active_index": active_index})

    @api.post("/cloudflare-accounts")
    async def add_account(body: CloudflareAccount) -> dict[str, Any]:
        account = body if body.id else body.model_copy(update={"id": _new_id()})
        store.add_cloudflare_account(account)
        return _ok({"id": account.id}, msg="success")

    @api.put("/cloudflare-accounts/{account_id}")
    async def update_account(account_id: str, body: CloudflareAccount) -> dict[str, Any]:
        if not store.update_cloudflare_account(body.model_copy(update={"id": account_id})):
            raise HTTPException(status_code=404, detail="account not found")
        return _ok(msg="success")

    @api.delete("/cloudflare-accounts/{account_id}")
    async def delete_account(account_id: str) -> dict[str, Any]:
        if not store.delete_cloudflare_account(account_id):
            raise HTTPException(status_code=404, detail="account not found")
        return _ok(msg="success")

    @api.post("/cloudflare-accounts/{account_id}/activate")
    async def activate_account(account_id: str) -> dict[str, Any]:
        if not store.activate_cloudflare_account(account_id):
            raise HTTPException(status_code=404, detail="account not found")
        return _ok(msg="success")

    app.include_router(api)
    return app
