#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from services.extensions_search import ExtensionSearch
from services.extensions_store import (
    DOWNLOAD,
    ICON,
    LICENSE,
    MANIFEST,
    README,
    ExtensionReference,
    ExtensionStore,
)


# -----------------------------
# Demo extension configuration
# -----------------------------


@dataclass(frozen=True)
class DemoExtension:
    namespace: str
    name: str
    display_name: str
    description: str
    versions: Sequence[str]
    categories: Sequence[str] = ()
    tags: Sequence[str] = ()
    engine: str = "^1.60.0"
    preview: bool = False
    # (username, rating)
    reviews: Sequence[Tuple[str, int]] = ()
    depends_on: Sequence[str] = ()
    bundles: Sequence[str] = ()
    repository: Optional[str] = None
    banner: Tuple[Optional[str], Optional[str]] = (None, None)
    with_icon: bool = True
    with_license: bool = True


DEMO_EXTENSIONS: List[DemoExtension] = [
    DemoExtension(
        namespace="redhat",
        name="vscode-yaml",
        display_name="YAML",
        description="YAML Language Support by Red Hat, with built-in Kubernetes syntax support",
        versions=["1.10.0", "1.11.0", "1.12.0-next.1"],
        categories=["Programming Languages", "Linters"],
        tags=["yaml", "kubernetes"],
        reviews=[("alice", 5), ("bob", 4)],
        repository="https://github.com/redhat-developer/vscode-yaml",
        banner=("#cc0000", "dark"),
    ),
    DemoExtension(
        namespace="Gruntfuggly",
        name="todo-tree",
        display_name="Todo Tree",
        description="Show TODO, FIXME, etc. comment tags in a tree view",
        versions=["0.0.160"],
        categories=["Other"],
        tags=["todo", "task", "tasklist", "multi-root ready"],
        engine="^1.5.0",
        repository="https://github.com/Gruntfuggly/todo-tree",
    ),
    DemoExtension(
        namespace="demo",
        name="language-pack",
        display_name="Demo Language Pack",
        description="Bundles the YAML and Todo Tree extensions",
        versions=["0.1.0", "0.2.0"],
        categories=["Extension Packs"],
        tags=["pack"],
        preview=True,
        depends_on=["redhat.vscode-yaml"],
        bundles=["redhat.vscode-yaml", "Gruntfuggly.todo-tree"],
        with_icon=False,
        with_license=False,
    ),
]


# -----------------------------
# Helpers for files
# -----------------------------

# PNG signature followed by filler; only the file name drives the content type
_PNG_ICON = b"\x89PNG\r\n\x1a\n" + b"demo-icon"


def _refs(qualified: Sequence[str]) -> List[ExtensionReference]:
    out: List[ExtensionReference] = []
    for qn in qualified:
        ns, nm = qn.split(".", 1)
        out.append(ExtensionReference(ns, nm))
    return out


def _package_json(ext: DemoExtension, version: str) -> bytes:
    pkg = {
        "publisher": ext.namespace,
        "name": ext.name,
        "version": version,
        "displayName": ext.display_name,
        "description": ext.description,
        "engines": {"vscode": ext.engine},
        "categories": list(ext.categories),
        "keywords": list(ext.tags),
    }
    return json.dumps(pkg, indent=2).encode("utf-8")


def seed_extension(store: ExtensionStore, ext: DemoExtension, base_ts: datetime) -> None:
    namespace = store.create_namespace(ext.namespace)
    extension = store.create_extension(namespace, ext.name)

    for idx, ver in enumerate(ext.versions):
        ev = store.add_version(
            extension,
            ver,
            timestamp=base_ts + timedelta(days=idx),
            display_name=ext.display_name,
            description=ext.description,
            preview=ext.preview,
            engines=[f"vscode@{ext.engine}"],
            categories=ext.categories,
            tags=ext.tags,
            gallery_color=ext.banner[0],
            gallery_theme=ext.banner[1],
            repository=ext.repository,
            dependencies=_refs(ext.depends_on),
            bundled_extensions=_refs(ext.bundles),
        )
        store.add_file(ev, DOWNLOAD, f"{ext.namespace}.{ext.name}-{ver}.vsix", b"PK\x03\x04demo-vsix-" + ver.encode())
        store.add_file(ev, MANIFEST, "package.json", _package_json(ext, ver))
        store.add_file(ev, README, "README.md", f"# {ext.display_name}\n\n{ext.description}\n".encode("utf-8"))
        if ext.with_license:
            store.add_file(ev, LICENSE, "LICENSE.txt", b"MIT License\n")
        if ext.with_icon:
            store.add_file(ev, ICON, "icon.png", _PNG_ICON)

    for username, rating in ext.reviews:
        store.add_review(extension, username, rating)


def seed(store: ExtensionStore, base_ts: Optional[datetime] = None) -> int:
    ts = base_ts or datetime(2024, 1, 1, 12, 0, 0)
    for ext in DEMO_EXTENSIONS:
        print(f"  - extension {ext.namespace}.{ext.name} ({', '.join(ext.versions)})")
        seed_extension(store, ext, ts)
    return len(DEMO_EXTENSIONS)


# -----------------------------
# Main logic
# -----------------------------


def parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Seed demo extensions into the gallery store.",
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=Path("./data/gallery.sqlite"),
        help="SQLite store path (default: ./data/gallery.sqlite)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Delete an existing store file before seeding",
    )
    return parser.parse_args(argv)


def ensure_clean_db(db: Path, force: bool) -> None:
    if not db.exists():
        return
    if not force:
        print(f"ERROR: {db} already exists. Use --force to replace it.", file=sys.stderr)
        sys.exit(1)
    for suffix in ("", "-wal", "-shm"):
        p = db.with_name(db.name + suffix)
        if p.exists():
            p.unlink()


def main(argv: List[str] | None = None) -> None:
    args = parse_args(argv)
    db: Path = args.db

    ensure_clean_db(db, force=args.force)
    store = ExtensionStore(db)
    print(f"Seeding demo extensions into {db}")
    seed(store)
    ExtensionSearch(store).rebuild()
    store.close()
    print(f"\nDone. Start the server with GALLERY_DB={db} python run.py (seed again with: python -m tools.seed_demo_data --force)")


if __name__ == "__main__":
    main()
