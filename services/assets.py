from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from services.errors import NotFoundError
from services.extensions_search import ExtensionSearch
from services.extensions_store import (
    DOWNLOAD,
    ICON,
    LICENSE,
    MANIFEST,
    README,
    ExtensionStore,
    ExtensionVersion,
    FileResource,
)


FILE_ICON = "Microsoft.VisualStudio.Services.Icons.Default"
FILE_DETAILS = "Microsoft.VisualStudio.Services.Content.Details"
FILE_LICENSE = "Microsoft.VisualStudio.Services.Content.License"
FILE_MANIFEST = "Microsoft.VisualStudio.Code.Manifest"
FILE_VSIX = "Microsoft.VisualStudio.Services.VSIXPackage"

MANIFEST_FILE_NAME = "package.json"

# asset token -> stored resource type
ASSET_TYPES: Dict[str, str] = {
    FILE_VSIX: DOWNLOAD,
    FILE_MANIFEST: MANIFEST,
    FILE_DETAILS: README,
    FILE_LICENSE: LICENSE,
    FILE_ICON: ICON,
}

OCTET_STREAM = "application/octet-stream"
TEXT_PLAIN = "text/plain"

# URLs carry the version, so the bytes behind them never change
CACHE_MAX_AGE_SECONDS = 30 * 24 * 60 * 60

_log = logging.getLogger("marketplace")


@dataclass(frozen=True)
class AssetFile:
    file_name: str
    content: bytes
    resource_type: str
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def content_type(self) -> str:
        return self.headers.get("Content-Type", OCTET_STREAM)


def guess_content_type(file_name: str, resource_type: Optional[str] = None) -> str:
    if resource_type == DOWNLOAD or file_name.endswith(".vsix"):
        return OCTET_STREAM
    mt, _enc = mimetypes.guess_type(file_name, strict=False)
    return mt or TEXT_PLAIN


def file_response_headers(file_name: str, resource_type: Optional[str] = None) -> Dict[str, str]:
    headers = {
        "Content-Type": guess_content_type(file_name, resource_type),
        "Cache-Control": f"max-age={CACHE_MAX_AGE_SECONDS}",
    }
    if resource_type == DOWNLOAD or file_name.endswith(".vsix"):
        headers["Content-Disposition"] = f'attachment; filename="{file_name}"'
    return headers


class AssetResolver:
    """Resolves version-pinned asset requests to stored file resources."""

    def __init__(self, store: ExtensionStore, search: ExtensionSearch) -> None:
        self.store = store
        self.search = search

    def _find_version(self, namespace: str, extension_name: str, version: str) -> ExtensionVersion:
        ev = self.store.find_version(version, extension_name, namespace)
        if ev is None:
            raise NotFoundError(f"Extension not found: {namespace}.{extension_name} {version}")
        return ev

    def _lookup(self, ev: ExtensionVersion, asset_type: str) -> Optional[Tuple[str, FileResource]]:
        resource_type = ASSET_TYPES.get(asset_type)
        if resource_type is None:
            return None
        resource = self.store.find_file(ev, resource_type)
        if resource is None:
            return None
        if resource_type == MANIFEST:
            return (MANIFEST_FILE_NAME, resource)
        return (resource.name or "", resource)

    def _count_download(self, ev: ExtensionVersion) -> None:
        updated = self.store.increment_download_count(ev.extension)
        try:
            self.search.update_search_entry(updated)
        except Exception:
            _log.exception("search_entry_update_failed extension=%s", updated.qualified_name)

    def _to_asset(self, ev: ExtensionVersion, file_name: str, resource: FileResource) -> AssetFile:
        if resource.type == DOWNLOAD:
            self._count_download(ev)
        return AssetFile(
            file_name=file_name,
            content=resource.content,
            resource_type=resource.type,
            headers=file_response_headers(file_name, resource.type),
        )

    def resolve_asset(self, namespace: str, extension_name: str, version: str, asset_type: str) -> AssetFile:
        ev = self._find_version(namespace, extension_name, version)
        found = self._lookup(ev, asset_type)
        if found is None:
            raise NotFoundError(f"Asset not found: {asset_type}")
        file_name, resource = found
        return self._to_asset(ev, file_name, resource)

    def resolve_file(self, namespace: str, extension_name: str, version: str, file_name: str) -> AssetFile:
        # Target of the per-version file links in query results
        ev = self._find_version(namespace, extension_name, version)
        if file_name == MANIFEST_FILE_NAME:
            resource = self.store.find_file(ev, MANIFEST)
        else:
            resource = None
        if resource is None:
            resource = self.store.find_file_by_name(ev, file_name)
        if resource is None:
            raise NotFoundError(f"File not found: {file_name}")
        return self._to_asset(ev, file_name, resource)
