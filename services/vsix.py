from __future__ import annotations

import io
import json
import posixpath
import zipfile
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional, Tuple
from xml.etree import ElementTree as ET

from services.extensions_store import (
    DOWNLOAD,
    ICON,
    LICENSE,
    MANIFEST,
    README,
    ExtensionReference,
    ExtensionStore,
    ExtensionVersion,
)


_PACKAGE_JSON_CANDIDATES = (
    "extension/package.json",
    "package.json",
    "Extension/package.json",
    "extension/Package.json",
)
_VSIXMANIFEST_CANDIDATES = ("extension.vsixmanifest", "extension/extension.vsixmanifest")
_README_CANDIDATES = ("extension/README.md", "extension/readme.md", "extension/README", "extension/README.txt")
_LICENSE_CANDIDATES = (
    "extension/LICENSE",
    "extension/LICENSE.md",
    "extension/LICENSE.txt",
    "extension/license",
    "extension/license.md",
    "extension/license.txt",
)

_DETAILS_ASSET = "Microsoft.VisualStudio.Services.Content.Details"


@dataclass(frozen=True)
class VsixMetadata:
    namespace: str
    name: str
    version: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    preview: bool = False
    engines: List[str] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    license: Optional[str] = None
    repository: Optional[str] = None
    gallery_color: Optional[str] = None
    gallery_theme: Optional[str] = None
    dependencies: List[ExtensionReference] = field(default_factory=list)
    bundled_extensions: List[ExtensionReference] = field(default_factory=list)


@dataclass(frozen=True)
class VsixResource:
    type: str
    name: str
    content: bytes


def _read_optional(zf: zipfile.ZipFile, member: str) -> Optional[bytes]:
    try:
        return zf.read(member)
    except KeyError:
        return None


def _first_present(zf: zipfile.ZipFile, candidates: Tuple[str, ...]) -> Optional[Tuple[str, bytes]]:
    for c in candidates:
        b = _read_optional(zf, c)
        if b is not None:
            return (c, b)
    return None


def _str_or_none(v: Any) -> Optional[str]:
    return v.strip() if isinstance(v, str) and v.strip() else None


def _str_list(v: Any) -> List[str]:
    if not isinstance(v, list):
        return []
    return [x.strip() for x in v if isinstance(x, str) and x.strip()]


def _refs(v: Any) -> List[ExtensionReference]:
    out: List[ExtensionReference] = []
    for qn in _str_list(v):
        parts = qn.split(".")
        if len(parts) == 2 and all(parts):
            out.append(ExtensionReference(parts[0], parts[1]))
    return out


def _local_name(tag: Any) -> str:
    # "{namespace}Asset" -> "Asset"; comments and PIs have non-string tags
    return tag.rsplit("}", 1)[-1] if isinstance(tag, str) else ""


def _repository(v: Any) -> Optional[str]:
    if isinstance(v, dict):
        return _str_or_none(v.get("url"))
    return _str_or_none(v)


class VsixError(ValueError):
    pass


class VsixReader:
    """
    Reads extension metadata and servable resources out of a .vsix archive.

    The archive layout is the one produced by `vsce package`: an `extension/`
    folder holding package.json, README, LICENSE and the icon, plus an
    `extension.vsixmanifest` at the root.
    """

    def __init__(self, data: bytes) -> None:
        if len(data) < 4 or data[:2] != b"PK":
            raise VsixError("not a zip/vsix (missing PK header)")
        self.data = data
        try:
            self._zf = zipfile.ZipFile(io.BytesIO(data), "r")
        except zipfile.BadZipFile as exc:
            raise VsixError(str(exc)) from exc
        try:
            self.package_json: Dict[str, Any] = self._load_package_json()
        except VsixError:
            self._zf.close()
            raise

    def _load_package_json(self) -> Dict[str, Any]:
        found = _first_present(self._zf, _PACKAGE_JSON_CANDIDATES)
        if not found:
            raise VsixError("VSIX missing package.json")
        self._manifest_member, self._manifest_bytes = found
        try:
            pkg = json.loads(self._manifest_bytes.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise VsixError(f"invalid package.json: {exc}") from exc
        if not isinstance(pkg, dict):
            raise VsixError("invalid package.json: expecting an object")
        return pkg

    def close(self) -> None:
        self._zf.close()

    def __enter__(self) -> "VsixReader":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    @property
    def namespace(self) -> str:
        v = _str_or_none(self.package_json.get("publisher"))
        if not v:
            raise VsixError("missing publisher")
        return v

    @property
    def extension_name(self) -> str:
        v = _str_or_none(self.package_json.get("name"))
        if not v:
            raise VsixError("missing name")
        return v

    def metadata(self) -> VsixMetadata:
        pkg = self.package_json
        version = _str_or_none(pkg.get("version"))
        if not version:
            raise VsixError("missing version")

        engines_raw = pkg.get("engines")
        engines: List[str] = []
        if isinstance(engines_raw, dict):
            engines = [f"{k}@{v}" for k, v in engines_raw.items() if isinstance(v, str)]

        banner = pkg.get("galleryBanner")
        banner = banner if isinstance(banner, dict) else {}

        return VsixMetadata(
            namespace=self.namespace,
            name=self.extension_name,
            version=version,
            display_name=_str_or_none(pkg.get("displayName")),
            description=_str_or_none(pkg.get("description")),
            preview=pkg.get("preview") is True,
            engines=engines,
            categories=_str_list(pkg.get("categories")),
            tags=_str_list(pkg.get("keywords")),
            license=_str_or_none(pkg.get("license")),
            repository=_repository(pkg.get("repository")),
            gallery_color=_str_or_none(banner.get("color")),
            gallery_theme=_str_or_none(banner.get("theme")),
            dependencies=_refs(pkg.get("extensionDependencies")),
            bundled_extensions=_refs(pkg.get("extensionPack")),
        )

    def _vsixmanifest(self) -> Optional[ET.Element]:
        found = _first_present(self._zf, _VSIXMANIFEST_CANDIDATES)
        if not found:
            return None
        try:
            return ET.fromstring(found[1])
        except ET.ParseError:
            # unreadable manifest: callers fall back to well-known file names
            return None

    def _manifest_elements(self, tag: str) -> List[ET.Element]:
        root = self._vsixmanifest()
        if root is None:
            return []
        return [el for el in root.iter() if _local_name(el.tag) == tag]

    def _manifest_asset_path(self, asset_type: str) -> Optional[str]:
        for el in self._manifest_elements("Asset"):
            path = el.get("Path")
            if el.get("Type") == asset_type and path:
                return path
        return None

    def _manifest_license_path(self) -> Optional[str]:
        for el in self._manifest_elements("License"):
            text = (el.text or "").strip()
            if text:
                return text
        return None

    def _resource(self, file_type: str, member: Optional[str], fallbacks: Tuple[str, ...] = ()) -> Optional[VsixResource]:
        candidates = ((member,) if member else ()) + fallbacks
        found = _first_present(self._zf, candidates)
        if not found:
            return None
        path, content = found
        return VsixResource(type=file_type, name=PurePosixPath(path).name, content=content)

    def resources(self, metadata: Optional[VsixMetadata] = None) -> List[VsixResource]:
        meta = metadata or self.metadata()
        out: List[VsixResource] = [
            VsixResource(type=DOWNLOAD, name=f"{meta.namespace}.{meta.name}-{meta.version}.vsix", content=self.data),
            VsixResource(type=MANIFEST, name=PurePosixPath(self._manifest_member).name, content=self._manifest_bytes),
        ]

        readme = self._resource(README, self._manifest_asset_path(_DETAILS_ASSET), _README_CANDIDATES)
        if readme:
            out.append(readme)

        license_file = self._resource(LICENSE, self._manifest_license_path(), _LICENSE_CANDIDATES)
        if license_file:
            out.append(license_file)

        icon = _str_or_none(self.package_json.get("icon"))
        if icon:
            icon_path = posixpath.normpath(icon).lstrip("/")
            if not icon_path.startswith("extension/"):
                icon_path = "extension/" + icon_path
            icon_file = self._resource(ICON, icon_path)
            if icon_file:
                out.append(icon_file)

        return out


def import_vsix(store: ExtensionStore, data: bytes) -> ExtensionVersion:
    # Store one .vsix as a new version with its file resources
    with VsixReader(data) as reader:
        meta = reader.metadata()
        resources = reader.resources(meta)

    # Version row and files commit together or not at all
    with store.transaction():
        namespace = store.create_namespace(meta.namespace)
        extension = store.create_extension(namespace, meta.name)
        ev = store.add_version(
            extension,
            meta.version,
            display_name=meta.display_name,
            description=meta.description,
            preview=meta.preview,
            engines=meta.engines,
            categories=meta.categories,
            tags=meta.tags,
            gallery_color=meta.gallery_color,
            gallery_theme=meta.gallery_theme,
            repository=meta.repository,
            dependencies=meta.dependencies,
            bundled_extensions=meta.bundled_extensions,
        )
        for res in resources:
            store.add_file(ev, res.type, res.name, res.content)
    return ev
