#!/usr/bin/env python3
from __future__ import annotations

import argparse
import hashlib
import sqlite3
import sys
from pathlib import Path
from typing import Any, List, Tuple
from urllib.parse import urlparse

import requests

from services.extensions_search import ExtensionSearch
from services.extensions_store import ExtensionStore
from services.vsix import VsixError, import_vsix


SEED_URLS = [
    "https://open-vsx.org/api/redhat/vscode-yaml/1.14.0/file/redhat.vscode-yaml-1.14.0.vsix",
    "https://open-vsx.org/api/Gruntfuggly/todo-tree/0.0.226/file/Gruntfuggly.todo-tree-0.0.226.vsix",
]


def eprint(*a: Any) -> None:
    print(*a, file=sys.stderr)


def sha256_bytes(b: bytes) -> str:
    h = hashlib.sha256()
    h.update(b)
    return h.hexdigest()


def is_url(source: str) -> bool:
    return urlparse(source).scheme in {"http", "https"}


def fetch_source(sess: requests.Session, source: str, workdir: Path, force: bool, timeout: int = 60) -> Tuple[Path, bytes]:
    # Local files are read as-is; URLs are cached under workdir
    if not is_url(source):
        p = Path(source).expanduser()
        return p, p.read_bytes()

    workdir.mkdir(parents=True, exist_ok=True)
    target = workdir / (Path(urlparse(source).path).name or "download.vsix")
    if target.exists() and not force:
        return target, target.read_bytes()

    r = sess.get(source, timeout=timeout)
    if r.status_code != 200:
        raise RuntimeError(f"GET {source} -> {r.status_code}")
    target.write_bytes(r.content)
    return target, r.content


def parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Import .vsix files (paths or URLs) into the gallery store.")
    ap.add_argument("sources", nargs="*", default=SEED_URLS, help="VSIX paths or URLs (default: a few open-vsx.org packages)")
    ap.add_argument("--db", type=Path, default=Path("./data/gallery.sqlite"), help="SQLite store path")
    ap.add_argument("--workdir", type=Path, default=Path(".vsix_work"), help="Download cache directory")
    ap.add_argument("--force", action="store_true", help="Re-download even if the file is cached")
    return ap.parse_args(argv)


def main(argv: List[str] | None = None) -> int:
    args = parse_args(argv)
    store = ExtensionStore(args.db)
    sess = requests.Session()

    overall_ok = True
    for source in args.sources:
        try:
            path, data = fetch_source(sess, source, args.workdir, args.force)
        except (OSError, RuntimeError, requests.RequestException) as exc:
            eprint(f"ERROR reading {source}: {exc}")
            overall_ok = False
            continue

        try:
            ev = import_vsix(store, data)
        except (VsixError, ValueError, sqlite3.IntegrityError) as exc:
            eprint(f"ERROR importing {path}: {exc}")
            overall_ok = False
            continue

        print(f"Imported {ev.extension.qualified_name}@{ev.version} from {path} sha256={sha256_bytes(data)[:12]}…")

    ExtensionSearch(store).rebuild()
    store.close()
    return 0 if overall_ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
