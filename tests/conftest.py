"""Shared pytest fixtures for the gallery tests."""

from __future__ import annotations

import io
import json
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import pytest
from flask import Flask
from flask.testing import FlaskClient

from core.app import create_app
from core.config import AppConfig
from services.extensions_search import ExtensionSearch
from services.extensions_store import ExtensionStore
from tools.seed_demo_data import seed


BASE_TS = datetime(2024, 1, 1, 12, 0, 0)
WEBUI_URL = "https://open-vsx.test"
VSCODE_ORIGIN = "vscode-file://vscode-app"


@pytest.fixture
def store(tmp_path: Path) -> Iterator[ExtensionStore]:
    """Empty record store in a temporary SQLite file."""
    s = ExtensionStore(tmp_path / "gallery.sqlite")
    s.init_schema()
    yield s
    s.close()


@pytest.fixture
def seeded_store(store: ExtensionStore) -> ExtensionStore:
    """
    Record store holding the demo extensions:

    1. redhat.vscode-yaml      1.10.0, 1.11.0, 1.12.0-next.1 (two reviews, banner)
    2. Gruntfuggly.todo-tree   0.0.160
    3. demo.language-pack      0.1.0, 0.2.0 (preview, no icon or license)
    """
    seed(store, base_ts=BASE_TS)
    return store


@pytest.fixture
def search(seeded_store: ExtensionStore) -> ExtensionSearch:
    s = ExtensionSearch(seeded_store)
    s.rebuild()
    return s


def make_config(db_path: Path, **overrides: Any) -> AppConfig:
    values: Dict[str, Any] = {
        "db_path": db_path,
        "webui_url": WEBUI_URL,
        "cors_origins": (VSCODE_ORIGIN,),
    }
    values.update(overrides)
    return AppConfig(**values)


@pytest.fixture
def app_factory(seeded_store: ExtensionStore):
    """Build an app over the seeded store with config overrides."""

    def _make(search: Optional[ExtensionSearch] = None, **overrides: Any) -> Flask:
        cfg = make_config(seeded_store.db_path, **overrides)
        app = create_app(cfg, store=seeded_store, search=search)
        app.config["TESTING"] = True
        return app

    return _make


@pytest.fixture
def app(app_factory) -> Flask:
    return app_factory()


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    return app.test_client()


def extension_query(
    client: FlaskClient,
    criteria: List[Dict[str, Any]],
    flags: int = 0,
    **filter_fields: Any,
):
    """POST one-filter extensionquery, the way VS Code sends it."""
    body = {"filters": [dict(criteria=criteria, **filter_fields)], "flags": flags}
    return client.post("/vscode/gallery/extensionquery", json=body)


def result_extensions(resp_json: Dict[str, Any]) -> List[Dict[str, Any]]:
    return resp_json["results"][0]["extensions"]


def result_total(resp_json: Dict[str, Any]) -> int:
    return resp_json["results"][0]["resultMetadata"][0]["metadataItems"][0]["count"]


def build_vsix(
    package_json: Optional[Dict[str, Any]] = None,
    files: Optional[Dict[str, bytes]] = None,
    vsixmanifest: Optional[str] = None,
) -> bytes:
    """Build a .vsix archive in memory, laid out like `vsce package` output."""
    pkg = package_json if package_json is not None else todo_tree_package_json()
    members: Dict[str, bytes] = {"extension/package.json": json.dumps(pkg).encode("utf-8")}
    if vsixmanifest is not None:
        members["extension.vsixmanifest"] = vsixmanifest.encode("utf-8")
    members.update(files or {})

    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, content in members.items():
            zf.writestr(name, content)
    return buf.getvalue()


def todo_tree_package_json(version: str = "0.0.226") -> Dict[str, Any]:
    return {
        "publisher": "Gruntfuggly",
        "name": "todo-tree",
        "version": version,
        "displayName": "Todo Tree",
        "description": "Show TODO, FIXME, etc. comment tags in a tree view",
        "icon": "resources/todo-tree.png",
        "engines": {"vscode": "^1.46.0"},
        "categories": ["Other"],
        "keywords": ["todo", "task"],
        "repository": {"type": "git", "url": "https://github.com/Gruntfuggly/todo-tree"},
        "galleryBanner": {"color": "#333333", "theme": "dark"},
        "extensionPack": ["redhat.vscode-yaml", "not-qualified"],
    }


TODO_TREE_VSIXMANIFEST = """<?xml version="1.0" encoding="utf-8"?>
<PackageManifest Version="2.0.0" xmlns="http://schemas.microsoft.com/developer/vsx-schema/2011">
  <Metadata>
    <Identity Language="en-US" Id="todo-tree" Version="0.0.226" Publisher="Gruntfuggly" />
    <License>extension/LICENSE.txt</License>
  </Metadata>
  <Assets>
    <Asset Type="Microsoft.VisualStudio.Code.Manifest" Path="extension/package.json" Addressable="true" />
    <Asset Type="Microsoft.VisualStudio.Services.Content.Details" Path="extension/README.md" Addressable="true" />
  </Assets>
</PackageManifest>
"""


def todo_tree_vsix(version: str = "0.0.226") -> bytes:
    return build_vsix(
        todo_tree_package_json(version),
        files={
            "extension/README.md": b"# Todo Tree\n",
            "extension/LICENSE.txt": b"MIT License\n",
            "extension/resources/todo-tree.png": b"\x89PNG\r\n\x1a\nicon",
        },
        vsixmanifest=TODO_TREE_VSIXMANIFEST,
    )
