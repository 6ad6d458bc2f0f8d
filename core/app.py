from __future__ import annotations

import json
import logging
import sys
import time
import traceback
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flask import Flask, Response, current_app, g, jsonify, request
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from core.config import AppConfig
from services.assets import AssetResolver
from services.extensions_search import ExtensionSearch
from services.extensions_store import ExtensionStore
from services.gallery import GalleryService


_log = logging.getLogger(__name__)

_DEBUG_BODY_LIMIT = 20000


@dataclass(frozen=True)
class GalleryServices:
    # Per-app service graph, stored under app.extensions["gallery"]
    config: AppConfig
    store: ExtensionStore
    search: ExtensionSearch
    gallery: GalleryService
    assets: AssetResolver


def get_services() -> GalleryServices:
    return current_app.extensions["gallery"]


def _build_services(cfg: AppConfig, store: Optional[ExtensionStore], search: Optional[ExtensionSearch]) -> GalleryServices:
    store = store or ExtensionStore(cfg.db_path)
    search = search or ExtensionSearch(store, enabled=cfg.search_enabled)
    return GalleryServices(
        config=cfg,
        store=store,
        search=search,
        gallery=GalleryService(store, search, id_prefix=cfg.id_prefix),
        assets=AssetResolver(store, search),
    )


# =========================
# request helpers
# =========================

def _utc_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _truncate(v: Any, max_len: int) -> Any:
    if v is None:
        return None
    try:
        s = v if isinstance(v, str) else json.dumps(v, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        s = str(v)
    return v if len(s) <= max_len else s[:max_len] + "…"


def _safe_headers() -> Dict[str, str]:
    hidden = {"authorization", "cookie", "set-cookie"}
    return {k: v for k, v in request.headers.items() if k.lower() not in hidden}


def _request_path() -> str:
    return request.full_path[:-1] if request.full_path.endswith("?") else request.full_path


def _request_record(logger_name: str, level: int, msg: str, status: int, exc_info: Any = None) -> logging.LogRecord:
    # Request fields are rendered by the formatters in core.config
    rec = logging.LogRecord(logger_name, level, __file__, 0, msg, (), exc_info)
    rec.request_id = getattr(g, "request_id", None)
    rec.remote_addr = request.headers.get("X-Forwarded-For", request.remote_addr)
    rec.method = request.method
    rec.path = _request_path()
    rec.status = status
    return rec


def _debug_context(with_body: bool) -> Dict[str, Any]:
    ctx: Dict[str, Any] = {"query": request.args.to_dict(flat=True), "headers": _safe_headers()}
    if with_body:
        ctx["json"] = _truncate(request.get_json(silent=True), _DEBUG_BODY_LIMIT)
    return ctx


def _apply_common_headers(resp: Response) -> Response:
    for name, value in (
        ("X-Content-Type-Options", "nosniff"),
        ("X-Frame-Options", "DENY"),
        ("Referrer-Policy", "no-referrer"),
    ):
        resp.headers.setdefault(name, value)
    resp.headers["X-Request-Id"] = getattr(g, "request_id", "")
    return resp


def _error_payload(e: Exception, status: int) -> Dict[str, Any]:
    # werkzeug errors carry `description`, GalleryError carries `message`
    message = getattr(e, "description", None) or getattr(e, "message", None) or str(e)
    return {
        "error": True,
        "status": status,
        "message": message,
        "requestId": getattr(g, "request_id", None),
        "timestamp": _utc_iso(),
    }


def _init_search(services: GalleryServices) -> None:
    try:
        services.store.init_schema()
        if services.search.is_enabled():
            services.search.rebuild()
    except Exception:
        _log.exception("search_index_init_failed")


def create_app(
    cfg: AppConfig,
    store: Optional[ExtensionStore] = None,
    search: Optional[ExtensionSearch] = None,
) -> Flask:
    """
    Build the gallery Flask app.

    `store` and `search` default to instances built from `cfg`; tests pass their
    own. The search index is rebuilt from the store at startup when enabled.
    """
    app = Flask(__name__)

    services = _build_services(cfg, store, search)
    app.extensions["gallery"] = services
    _init_search(services)

    # Behind a reverse proxy: trust one hop of X-Forwarded-{For,Proto,Host}
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)  # type: ignore[method-assign]

    @app.before_request
    def _start_request() -> None:
        g.request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
        g.started_at = time.perf_counter()

    @app.after_request
    def _access_log(resp: Response) -> Response:
        rec = _request_record("access", logging.INFO, "request", resp.status_code)
        rec.duration_ms = int((time.perf_counter() - g.get("started_at", time.perf_counter())) * 1000)
        rec.bytes = resp.calculate_content_length()
        rec.ua = request.headers.get("User-Agent")
        if app.debug:
            rec.extra = _debug_context(with_body=False)
        logging.getLogger("access").handle(rec)
        return _apply_common_headers(resp)

    @app.errorhandler(Exception)
    def _handle_exception(e: Exception):
        if isinstance(e, HTTPException) and e.code is not None and e.code < 400:
            # routing redirects pass through untouched
            return e

        # HTTPException and GalleryError both carry `code`
        status = int(getattr(e, "code", None) or 500)
        server_error = status >= 500

        rec = _request_record(
            "error",
            logging.ERROR if server_error else logging.WARNING,
            "exception",
            status,
            exc_info=sys.exc_info() if server_error else None,
        )
        if app.debug:
            rec.extra = _debug_context(with_body=True)
        logging.getLogger("error").handle(rec)

        payload = _error_payload(e, status)
        if app.debug and server_error:
            payload["traceback"] = _truncate("".join(traceback.format_exception(*sys.exc_info())), _DEBUG_BODY_LIMIT)

        resp = jsonify(payload)
        resp.status_code = status
        return _apply_common_headers(resp)

    @app.get("/health")
    def health():
        return jsonify({"ok": True, "timestamp": _utc_iso()}), 200

    from api.extensions_marketplace import bp_marketplace

    app.register_blueprint(bp_marketplace)

    _log.info("app_started db=%s search_enabled=%s", str(cfg.db_path), services.search.is_enabled())
    return app
