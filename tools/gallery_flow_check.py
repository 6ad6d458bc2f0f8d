#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests


DEFAULT_BASE_URL = "http://127.0.0.1:8000"
DEFAULT_EXTENSIONS = ["redhat.vscode-yaml", "Gruntfuggly.todo-tree"]

FILE_VSIX = "Microsoft.VisualStudio.Services.VSIXPackage"
FILE_MANIFEST = "Microsoft.VisualStudio.Code.Manifest"

# versions | files | version properties | asset uri | statistics
CLIENT_FLAGS = 0x1 | 0x2 | 0x10 | 0x80 | 0x100


@dataclass
class Check:
    name: str
    ok: bool
    status: int
    detail: str


def eprint(*a: Any) -> None:
    print(*a, file=sys.stderr)


def req(
    sess: requests.Session,
    method: str,
    url: str,
    *,
    expected: Tuple[int, ...],
    json_body: Optional[Dict[str, Any]] = None,
    timeout: int = 60,
    allow_redirects: bool = True,
) -> requests.Response:
    r = sess.request(
        method,
        url,
        json=json_body,
        headers={"Accept": "application/json;api-version=3.0-preview.1"} if json_body is not None else None,
        timeout=timeout,
        allow_redirects=allow_redirects,
    )
    if r.status_code not in expected:
        raise RuntimeError(f"{method} {url} -> {r.status_code}, expected {expected}. Body: {r.text[:1200]}")
    return r


def name_query_body(qualified_name: str, flags: int = CLIENT_FLAGS) -> Dict[str, Any]:
    # What VS Code sends when it refreshes a single installed extension
    return {
        "filters": [
            {
                "criteria": [{"filterType": 7, "value": qualified_name}],
                "pageNumber": 1,
                "pageSize": 1,
                "sortBy": 0,
                "sortOrder": 0,
            }
        ],
        "flags": flags,
    }


def search_query_body(text: str, page_size: int = 20) -> Dict[str, Any]:
    return {
        "filters": [
            {
                "criteria": [{"filterType": 10, "value": text}],
                "pageNumber": 1,
                "pageSize": page_size,
                "sortBy": 0,
                "sortOrder": 0,
            }
        ],
        "flags": 0x200 | 0x80 | 0x100,
    }


def extensions_of(resp_json: Dict[str, Any]) -> List[Dict[str, Any]]:
    results = resp_json.get("results")
    if not isinstance(results, list) or not results:
        raise RuntimeError("extensionquery: missing results")
    exts = results[0].get("extensions")
    if not isinstance(exts, list):
        raise RuntimeError("extensionquery: missing extensions list")
    return exts


def total_count_of(resp_json: Dict[str, Any]) -> int:
    results = resp_json.get("results") or [{}]
    for md in results[0].get("resultMetadata") or []:
        for item in md.get("metadataItems") or []:
            if item.get("name") == "TotalCount":
                return int(item.get("count") or 0)
    raise RuntimeError("extensionquery: missing TotalCount")


def pick_latest_version(resp_json: Dict[str, Any], qualified_name: str) -> Dict[str, Any]:
    want_ns, _, want_name = qualified_name.lower().partition(".")
    for x in extensions_of(resp_json):
        ns = str((x.get("publisher") or {}).get("publisherName") or "").lower()
        name = str(x.get("extensionName") or "").lower()
        if ns == want_ns and name == want_name:
            versions = x.get("versions")
            if not isinstance(versions, list) or not versions:
                raise RuntimeError("extensionquery: missing versions")
            return versions[0]
    raise RuntimeError(f"extensionquery: extension not found: {qualified_name}")


def file_source(version: Dict[str, Any], asset_type: str) -> Optional[str]:
    for f in version.get("files") or []:
        if isinstance(f, dict) and f.get("assetType") == asset_type and f.get("source"):
            return str(f["source"])
    return None


def print_report(title: str, checks: List[Check]) -> bool:
    print(f"\n--- {title} ---")
    ok_all = True
    for c in checks:
        flag = "OK" if c.ok else "FAIL"
        print(f"[{flag}] {c.name} (status={c.status}) {c.detail}")
        if not c.ok:
            ok_all = False
    return ok_all


def check_client_flow(sess: requests.Session, base_url: str, qualified_name: str) -> List[Check]:
    checks: List[Check] = []
    vscode = base_url.rstrip("/") + "/vscode"

    def ok(name: str, status: int, detail: str) -> None:
        checks.append(Check(name=name, ok=True, status=status, detail=detail))

    def bad(name: str, status: int, detail: str) -> None:
        checks.append(Check(name=name, ok=False, status=status, detail=detail))

    # 1) QUERY BY NAME
    qurl = f"{vscode}/gallery/extensionquery"
    try:
        j = req(sess, "POST", qurl, expected=(200,), json_body=name_query_body(qualified_name)).json()
        latest = pick_latest_version(j, qualified_name)
        ok("POST /vscode/gallery/extensionquery", 200, f"latest={latest.get('version')}")
    except (RuntimeError, requests.RequestException, ValueError) as exc:
        bad("POST /vscode/gallery/extensionquery", 0, f"{qurl} :: {exc}")
        return checks

    version = str(latest.get("version"))
    ns, _, name = qualified_name.partition(".")

    # 2) PACKAGE VIA ASSET URI
    asset_uri = latest.get("assetUri")
    if asset_uri:
        url = f"{asset_uri}/{FILE_VSIX}"
        try:
            r = req(sess, "GET", url, expected=(200,))
            if "attachment" not in (r.headers.get("Content-Disposition") or ""):
                raise RuntimeError("missing attachment disposition")
            ok("GET /vscode/asset/.../VSIXPackage", 200, f"{len(r.content)} bytes")
        except (RuntimeError, requests.RequestException) as exc:
            bad("GET /vscode/asset/.../VSIXPackage", 0, f"{url} :: {exc}")
    else:
        bad("assetUri present", 0, "no assetUri in version")

    # 3) MANIFEST VIA FILE LINK
    src = file_source(latest, FILE_MANIFEST)
    if src:
        try:
            req(sess, "GET", src, expected=(200,)).json()
            ok("GET manifest file link", 200, src)
        except (RuntimeError, requests.RequestException, ValueError) as exc:
            bad("GET manifest file link", 0, f"{src} :: {exc}")
    else:
        bad("manifest file link present", 0, "no manifest in files")

    # 4) VSPACKAGE REDIRECT
    vsp = f"{vscode}/gallery/publishers/{ns}/vsextensions/{name}/{version}/vspackage"
    try:
        r = req(sess, "GET", vsp, expected=(302,), allow_redirects=False)
        ok("GET .../vspackage", 302, r.headers.get("Location") or "")
    except (RuntimeError, requests.RequestException) as exc:
        bad("GET .../vspackage", 0, f"{vsp} :: {exc}")

    # 5) ITEM REDIRECT
    item = f"{vscode}/item?itemName={qualified_name}"
    try:
        r = req(sess, "GET", item, expected=(302,), allow_redirects=False)
        ok("GET /vscode/item", 302, r.headers.get("Location") or "")
    except (RuntimeError, requests.RequestException) as exc:
        bad("GET /vscode/item", 0, f"{item} :: {exc}")

    return checks


def main(argv: List[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="VS Code gallery client flow checker.")
    ap.add_argument("--base-url", default=DEFAULT_BASE_URL, help=f"Target service base URL (default {DEFAULT_BASE_URL})")
    ap.add_argument("--search", default="", help="Also run a text search and print the total count")
    ap.add_argument("extensions", nargs="*", default=DEFAULT_EXTENSIONS, help="Qualified names (publisher.name)")
    args = ap.parse_args(argv)

    base_url = args.base_url.rstrip("/")
    sess = requests.Session()

    overall_ok = True
    for qn in args.extensions:
        checks = check_client_flow(sess, base_url, qn)
        overall_ok = print_report(f"{qn} :: client flow", checks) and overall_ok

    if args.search:
        try:
            j = req(sess, "POST", f"{base_url}/vscode/gallery/extensionquery", expected=(200,), json_body=search_query_body(args.search)).json()
            print(f"\nsearch {args.search!r}: total={total_count_of(j)} returned={len(extensions_of(j))}")
        except (RuntimeError, requests.RequestException, ValueError) as exc:
            eprint(f"ERROR search {args.search!r}: {exc}")
            overall_ok = False

    return 0 if overall_ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
