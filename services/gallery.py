from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from services.assets import (
    FILE_DETAILS,
    FILE_ICON,
    FILE_LICENSE,
    FILE_MANIFEST,
    FILE_VSIX,
    MANIFEST_FILE_NAME,
)
from services.errors import BadRequestError, SearchQueryError
from services.extensions_search import ExtensionSearch, PageRequest, SearchPage
from services.extensions_store import (
    DOWNLOAD,
    ICON,
    LICENSE,
    MANIFEST,
    README,
    Extension,
    ExtensionStore,
    ExtensionVersion,
)
from services.gallery_query import (
    ExtensionQuery,
    IdLookup,
    NameLookup,
    QueryFlags,
    SearchRequest,
    extract_request,
)
from services.urls import create_api_url
from services.versions import sort_versions


FLAG_PREVIEW = "preview"

STAT_INSTALL = "install"
STAT_AVERAGE_RATING = "averagerating"
STAT_RATING_COUNT = "ratingcount"

PROP_BRANDING_COLOR = "Microsoft.VisualStudio.Services.Branding.Color"
PROP_BRANDING_THEME = "Microsoft.VisualStudio.Services.Branding.Theme"
PROP_REPOSITORY = "Microsoft.VisualStudio.Services.Links.Source"
PROP_ENGINE = "Microsoft.VisualStudio.Code.Engine"
PROP_DEPENDENCY = "Microsoft.VisualStudio.Code.ExtensionDependencies"
PROP_EXTENSION_PACK = "Microsoft.VisualStudio.Code.ExtensionPack"
PROP_LOCALIZED_LANGUAGES = "Microsoft.VisualStudio.Code.LocalizedLanguages"

ENGINE_PREFIX = "vscode@"

# File links in emission order: (asset token, stored type)
_FILE_LINKS = (
    (FILE_MANIFEST, MANIFEST),
    (FILE_DETAILS, README),
    (FILE_LICENSE, LICENSE),
    (FILE_ICON, ICON),
    (FILE_VSIX, DOWNLOAD),
)

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_LONG_RE = re.compile(r"[+-]?\d+")

_log = logging.getLogger("marketplace")


def _parse_long(s: str) -> Optional[int]:
    # Signed 64-bit decimal, nothing else (no whitespace, no underscores)
    if not _LONG_RE.fullmatch(s):
        return None
    v = int(s)
    if v < _INT64_MIN or v > _INT64_MAX:
        return None
    return v


def _iso(ts: datetime) -> str:
    return ts.replace(microsecond=0).isoformat() + "Z"


def vscode_engine(engines: Optional[List[str]]) -> Optional[str]:
    if engines is None:
        return None
    for engine in engines:
        if engine.startswith(ENGINE_PREFIX):
            return engine[len(ENGINE_PREFIX):]
    return None


def query_result(extensions: List[Dict[str, Any]], total: int) -> Dict[str, Any]:
    # Fixed envelope, same shape for zero results
    return {
        "results": [
            {
                "extensions": extensions,
                "resultMetadata": [
                    {
                        "metadataType": "ResultCount",
                        "metadataItems": [{"name": "TotalCount", "count": int(total)}],
                    }
                ],
            }
        ]
    }


class GalleryService:
    """
    Answers gallery queries: picks the lookup path for a query, hydrates the
    matching extensions from the record store and renders them in the
    ExtensionQueryResult wire schema.
    """

    def __init__(self, store: ExtensionStore, search: ExtensionSearch, id_prefix: str = "") -> None:
        self.store = store
        self.search = search
        self.id_prefix = id_prefix or ""

    # =========================
    # lookup
    # =========================

    def query(self, query: ExtensionQuery, server_url: str) -> Dict[str, Any]:
        req = extract_request(query)
        if isinstance(req, IdLookup):
            return self.find_by_ids(req.ids, query.flags, server_url)
        if isinstance(req, NameLookup):
            return self.find_by_names(req.names, query.flags, server_url)
        return self.find_by_search(req, query.flags, server_url)

    def find_by_ids(self, ids: List[str], flags: QueryFlags, server_url: str) -> Dict[str, Any]:
        extensions: List[Dict[str, Any]] = []
        for raw in ids:
            key = raw[len(self.id_prefix):] if raw.startswith(self.id_prefix) else raw
            primary_key = _parse_long(key)
            if primary_key is None:
                _log.debug("extensionquery skip id=%r reason=unparseable", raw)
                continue
            ext = self.store.find_extension_by_id(primary_key)
            if ext is None:
                _log.debug("extensionquery skip id=%r reason=not_found", raw)
                continue
            item = self.to_query_extension(ext, flags, server_url)
            if item is not None:
                extensions.append(item)
        return query_result(extensions, len(extensions))

    def find_by_names(self, names: List[str], flags: QueryFlags, server_url: str) -> Dict[str, Any]:
        extensions: List[Dict[str, Any]] = []
        for qualified_name in names:
            parts = qualified_name.split(".")
            if len(parts) != 2:
                _log.debug("extensionquery skip name=%r reason=malformed", qualified_name)
                continue
            namespace, name = parts
            ext = self.store.find_extension(name, namespace)
            if ext is None:
                _log.debug("extensionquery skip name=%r reason=not_found", qualified_name)
                continue
            item = self.to_query_extension(ext, flags, server_url)
            if item is not None:
                extensions.append(item)
        return query_result(extensions, len(extensions))

    def find_by_search(self, req: SearchRequest, flags: QueryFlags, server_url: str) -> Dict[str, Any]:
        if not self.search.is_enabled():
            return query_result([], 0)
        try:
            page: SearchPage = self.search.search(
                req.text,
                req.category,
                PageRequest(req.page, req.size),
                req.sort_order,
                req.sort_by,
            )
        except SearchQueryError as exc:
            raise BadRequestError(exc.message) from exc

        extensions: List[Dict[str, Any]] = []
        for hit in page.hits:
            ext = self.store.find_extension_by_id(hit.id)
            if ext is None:
                # index and store disagree; drop the hit
                _log.debug("extensionquery skip search_hit=%s reason=not_found", hit.id)
                continue
            item = self.to_query_extension(ext, flags, server_url)
            if item is not None:
                extensions.append(item)
        return query_result(extensions, page.total)

    # =========================
    # result assembly
    # =========================

    def to_query_extension(self, ext: Extension, flags: QueryFlags, server_url: str) -> Optional[Dict[str, Any]]:
        latest = self.store.find_latest_version(ext)
        if latest is None:
            _log.debug("extensionquery skip extension=%s reason=no_versions", ext.qualified_name)
            return None

        item: Dict[str, Any] = {
            "publisher": {
                "publisherId": f"{self.id_prefix}{ext.namespace.id}",
                "publisherName": ext.namespace.name,
                "displayName": ext.namespace.name,
            },
            "extensionId": f"{self.id_prefix}{ext.id}",
            "extensionName": ext.name,
            "displayName": latest.display_name,
            "shortDescription": latest.description,
            "flags": FLAG_PREVIEW if latest.preview else "",
        }

        if flags.has_latest_only():
            item["versions"] = [self.to_query_version(latest, flags, server_url)]
        elif flags.wants_version_list():
            all_versions = sort_versions(self.store.find_versions(ext))
            item["versions"] = [self.to_query_version(ev, flags, server_url) for ev in all_versions]

        if flags.has_statistics():
            item["statistics"] = self._statistics(ext)

        if flags.has_category_and_tags():
            item["categories"] = list(latest.categories)
            item["tags"] = list(latest.tags)

        return item

    def _statistics(self, ext: Extension) -> List[Dict[str, Any]]:
        # Fixed order: install, [averagerating], ratingcount
        stats: List[Dict[str, Any]] = [{"statisticName": STAT_INSTALL, "value": ext.download_count}]
        if ext.average_rating is not None:
            stats.append({"statisticName": STAT_AVERAGE_RATING, "value": ext.average_rating})
        stats.append({"statisticName": STAT_RATING_COUNT, "value": self.store.count_active_reviews(ext)})
        return stats

    def to_query_version(self, ev: ExtensionVersion, flags: QueryFlags, server_url: str) -> Dict[str, Any]:
        namespace = ev.extension.namespace.name
        ext_name = ev.extension.name
        out: Dict[str, Any] = {
            "version": ev.version,
            "lastUpdated": _iso(ev.timestamp),
        }

        if flags.has_asset_uri():
            asset_uri = create_api_url(server_url, "vscode", "asset", namespace, ext_name, ev.version)
            out["assetUri"] = asset_uri
            out["fallbackAssetUri"] = asset_uri

        if flags.has_files():
            names = self.store.list_file_names(ev)
            files: List[Dict[str, Any]] = []
            for asset_type, resource_type in _FILE_LINKS:
                if resource_type not in names:
                    continue
                file_name = MANIFEST_FILE_NAME if resource_type == MANIFEST else names[resource_type]
                files.append(
                    {
                        "assetType": asset_type,
                        "source": create_api_url(server_url, "api", namespace, ext_name, ev.version, "file", file_name),
                    }
                )
            out["files"] = files

        if flags.has_version_properties():
            props: List[Dict[str, Any]] = []

            def add(key: str, value: Optional[str]) -> None:
                if value is not None:
                    props.append({"key": key, "value": value})

            add(PROP_BRANDING_COLOR, ev.gallery_color)
            add(PROP_BRANDING_THEME, ev.gallery_theme)
            add(PROP_REPOSITORY, ev.repository)
            add(PROP_ENGINE, vscode_engine(ev.engines))
            add(PROP_DEPENDENCY, ",".join(d.qualified_name for d in ev.dependencies))
            add(PROP_EXTENSION_PACK, ",".join(b.qualified_name for b in ev.bundled_extensions))
            add(PROP_LOCALIZED_LANGUAGES, "")
            out["properties"] = props

        return out
