from __future__ import annotations

import logging
from typing import Dict

from flask import Blueprint, Response, abort, g, jsonify, redirect, request

from core.app import get_services
from services.assets import FILE_VSIX, AssetFile
from services.gallery_query import IdLookup, NameLookup, extract_request, parse_query
from services.urls import create_api_url


bp_marketplace = Blueprint("marketplace_api", __name__)

_ALLOWED_METHODS = "GET, POST, OPTIONS"

_log = logging.getLogger("marketplace")


def _base_url() -> str:
    return request.host_url.rstrip("/")


def _get_cors_origin() -> str:
    origin = (request.headers.get("Origin") or "").strip()
    if not origin:
        return ""
    allowed = get_services().config.cors_origins
    if "*" in allowed:
        return origin
    return origin if origin in allowed else ""


def _apply_cors_headers(resp: Response) -> Response:
    origin = _get_cors_origin()
    if not origin:
        return resp

    resp.headers["Access-Control-Allow-Origin"] = origin
    resp.headers["Vary"] = "Origin"
    resp.headers["Access-Control-Allow-Methods"] = _ALLOWED_METHODS
    resp.headers["Access-Control-Max-Age"] = "86400"

    req_hdrs = (request.headers.get("Access-Control-Request-Headers") or "").strip()
    if req_hdrs:
        resp.headers["Access-Control-Allow-Headers"] = req_hdrs
    else:
        resp.headers["Access-Control-Allow-Headers"] = "*"

    return resp


@bp_marketplace.after_request
def _marketplace_after_request(resp: Response) -> Response:
    return _apply_cors_headers(resp)


@bp_marketplace.route("/vscode/<path:_any>", methods=["OPTIONS"], strict_slashes=False)
def _vscode_preflight(_any: str) -> Response:
    return Response("", status=204)


def _asset_response(asset: AssetFile) -> Response:
    headers: Dict[str, str] = {k: v for k, v in asset.headers.items() if k != "Content-Type"}
    return Response(asset.content, status=200, content_type=asset.content_type, headers=headers)


@bp_marketplace.post("/vscode/gallery/extensionquery")
def extensionquery() -> Response:
    services = get_services()

    payload = request.get_json(silent=True)
    query = parse_query(payload if payload is not None else {})

    if _log.isEnabledFor(logging.INFO):
        req = extract_request(query)
        if isinstance(req, IdLookup):
            kind, detail = "id", ",".join(req.ids)
        elif isinstance(req, NameLookup):
            kind, detail = "name", ",".join(req.names)
        else:
            kind, detail = "search", f"text={req.text!r} category={req.category!r} page={req.page} size={req.size} sort={req.sort_by}:{req.sort_order}"
        _log.info(
            "extensionquery reqId=%s kind=%s flags=%s %s",
            getattr(g, "request_id", None),
            kind,
            query.flags.value,
            detail,
        )

    result = services.gallery.query(query, _base_url())
    return jsonify(result)


@bp_marketplace.get("/vscode/asset/<namespaceName>/<extensionName>/<version>/<path:assetType>")
def get_asset(namespaceName: str, extensionName: str, version: str, assetType: str) -> Response:
    asset = get_services().assets.resolve_asset(namespaceName, extensionName, version, assetType)
    return _asset_response(asset)


@bp_marketplace.get("/api/<namespaceName>/<extensionName>/<version>/file/<path:fileName>")
def get_file(namespaceName: str, extensionName: str, version: str, fileName: str) -> Response:
    asset = get_services().assets.resolve_file(namespaceName, extensionName, version, fileName)
    return _asset_response(asset)


@bp_marketplace.get("/vscode/item")
def item_url():
    item_name = request.args.get("itemName") or ""
    dot = item_name.find(".")
    if dot < 0:
        abort(400, "Expecting an item of the form `{publisher}.{name}`")
    namespace = item_name[:dot]
    extension = item_name[dot + 1:]
    target = create_api_url(get_services().config.webui_url, "extension", namespace, extension)
    return redirect(target, code=302)


@bp_marketplace.get("/vscode/gallery/publishers/<namespaceName>/vsextensions/<extensionName>/<version>/vspackage")
def download(namespaceName: str, extensionName: str, version: str):
    target = create_api_url(_base_url(), "vscode", "asset", namespaceName, extensionName, version, FILE_VSIX)
    return redirect(target, code=302)
