from __future__ import annotations

from conftest import VSCODE_ORIGIN, WEBUI_URL, extension_query, result_extensions, result_total

from services.extensions_search import ExtensionSearch


VSIX = "Microsoft.VisualStudio.Services.VSIXPackage"


def _install_count(client, qualified_name):
    resp = extension_query(client, [{"filterType": 7, "value": qualified_name}], flags=0x100)
    stats = result_extensions(resp.get_json())[0]["statistics"]
    return next(s["value"] for s in stats if s["statisticName"] == "install")


class TestExtensionQuery:
    def test_name_lookup(self, client):
        resp = extension_query(client, [{"filterType": 7, "value": "redhat.vscode-yaml"}], flags=0x200 | 0x80)
        assert resp.status_code == 200
        exts = result_extensions(resp.get_json())
        assert len(exts) == 1
        version = exts[0]["versions"][0]
        assert version["version"] == "1.12.0-next.1"
        assert version["assetUri"] == "http://localhost/vscode/asset/redhat/vscode-yaml/1.12.0-next.1"

    def test_id_lookup_with_prefix(self, app_factory):
        client = app_factory(id_prefix="ovsx-").test_client()
        resp = extension_query(
            client, [{"filterType": 4, "value": v} for v in ("ovsx-2", "abc", "ovsx-999", "ovsx-1")]
        )
        body = resp.get_json()
        assert [e["extensionId"] for e in result_extensions(body)] == ["ovsx-2", "ovsx-1"]
        assert result_total(body) == 2

    def test_empty_body_lists_everything(self, client):
        resp = client.post("/vscode/gallery/extensionquery")
        assert resp.status_code == 200
        assert result_total(resp.get_json()) == 3

    def test_search_paging(self, client):
        resp = extension_query(client, [{"filterType": 10, "value": "yaml"}], pageNumber=1, pageSize=1)
        body = resp.get_json()
        assert [e["extensionName"] for e in result_extensions(body)] == ["vscode-yaml"]
        assert result_total(body) == 2

    def test_search_by_category(self, client):
        resp = extension_query(client, [{"filterType": 5, "value": "Extension Packs"}])
        assert [e["extensionName"] for e in result_extensions(resp.get_json())] == ["language-pack"]

    def test_search_disabled(self, app_factory):
        client = app_factory(search_enabled=False).test_client()
        resp = extension_query(client, [{"filterType": 10, "value": "yaml"}])
        assert resp.status_code == 200
        body = resp.get_json()
        assert result_extensions(body) == []
        assert result_total(body) == 0

    def test_invalid_search_is_400(self, client):
        resp = extension_query(client, [], pageSize=500)
        assert resp.status_code == 400
        body = resp.get_json()
        assert body["error"] is True
        assert body["status"] == 400
        assert "Page size" in body["message"]

    def test_page_number_zero_is_400(self, client):
        assert extension_query(client, [], pageNumber=0).status_code == 400

    def test_non_object_body_is_400(self, client):
        resp = client.post("/vscode/gallery/extensionquery", json=[1, 2])
        assert resp.status_code == 400
        assert resp.get_json()["message"] == "Expecting a JSON object"

    def test_bad_integer_is_400(self, client):
        assert extension_query(client, [], pageSize="many").status_code == 400


class TestAssets:
    def test_vsix_download(self, client):
        resp = client.get(f"/vscode/asset/redhat/vscode-yaml/1.11.0/{VSIX}")
        assert resp.status_code == 200
        assert resp.data == b"PK\x03\x04demo-vsix-1.11.0"
        assert resp.mimetype == "application/octet-stream"
        assert resp.headers["Content-Disposition"] == 'attachment; filename="redhat.vscode-yaml-1.11.0.vsix"'
        assert resp.headers["Cache-Control"] == "max-age=2592000"

    def test_manifest_asset(self, client):
        resp = client.get("/vscode/asset/redhat/vscode-yaml/1.11.0/Microsoft.VisualStudio.Code.Manifest")
        assert resp.status_code == 200
        assert resp.mimetype == "application/json"
        assert resp.get_json()["version"] == "1.11.0"
        assert "Content-Disposition" not in resp.headers

    def test_icon_asset(self, client):
        resp = client.get("/vscode/asset/Gruntfuggly/todo-tree/0.0.160/Microsoft.VisualStudio.Services.Icons.Default")
        assert resp.status_code == 200
        assert resp.mimetype == "image/png"

    def test_downloads_are_counted(self, client):
        assert _install_count(client, "redhat.vscode-yaml") == 0
        client.get(f"/vscode/asset/redhat/vscode-yaml/1.11.0/{VSIX}")
        client.get("/api/redhat/vscode-yaml/1.10.0/file/redhat.vscode-yaml-1.10.0.vsix")
        assert _install_count(client, "redhat.vscode-yaml") == 2

    def test_other_assets_not_counted(self, client):
        client.get("/vscode/asset/redhat/vscode-yaml/1.11.0/Microsoft.VisualStudio.Code.Manifest")
        assert _install_count(client, "redhat.vscode-yaml") == 0

    def test_failed_reindex_does_not_fail_download(self, app_factory, seeded_store):
        class _FlakySearch(ExtensionSearch):
            fail = False

            def update_search_entry(self, extension):
                if self.fail:
                    raise RuntimeError("index unavailable")
                super().update_search_entry(extension)

        flaky = _FlakySearch(seeded_store)
        client = app_factory(search=flaky).test_client()
        flaky.fail = True

        resp = client.get(f"/vscode/asset/Gruntfuggly/todo-tree/0.0.160/{VSIX}")
        assert resp.status_code == 200
        assert seeded_store.find_extension("todo-tree", "Gruntfuggly").download_count == 1

    def test_missing_asset_404(self, client):
        assert client.get("/vscode/asset/demo/language-pack/0.2.0/Microsoft.VisualStudio.Services.Icons.Default").status_code == 404
        assert client.get("/vscode/asset/redhat/vscode-yaml/1.11.0/Microsoft.VisualStudio.Unknown").status_code == 404
        assert client.get(f"/vscode/asset/redhat/vscode-yaml/9.9.9/{VSIX}").status_code == 404
        resp = client.get(f"/vscode/asset/nobody/nothing/1.0.0/{VSIX}")
        assert resp.status_code == 404
        assert resp.get_json()["error"] is True


class TestFileLinks:
    def test_manifest_by_link_name(self, client):
        resp = client.get("/api/redhat/vscode-yaml/1.11.0/file/package.json")
        assert resp.status_code == 200
        assert resp.get_json()["name"] == "vscode-yaml"

    def test_file_by_stored_name(self, client):
        resp = client.get("/api/redhat/vscode-yaml/1.11.0/file/LICENSE.txt")
        assert resp.status_code == 200
        assert resp.data == b"MIT License\n"
        assert resp.mimetype == "text/plain"

    def test_unknown_file_404(self, client):
        assert client.get("/api/redhat/vscode-yaml/1.11.0/file/CHANGELOG.md").status_code == 404

    def test_links_from_query_resolve(self, client):
        resp = extension_query(client, [{"filterType": 7, "value": "redhat.vscode-yaml"}], flags=0x200 | 0x2)
        files = result_extensions(resp.get_json())[0]["versions"][0]["files"]
        for f in files:
            path = f["source"].replace("http://localhost", "", 1)
            assert client.get(path).status_code == 200, f["assetType"]


class TestRedirects:
    def test_item_redirect(self, client):
        resp = client.get("/vscode/item?itemName=redhat.vscode-yaml")
        assert resp.status_code == 302
        assert resp.headers["Location"] == f"{WEBUI_URL}/extension/redhat/vscode-yaml"

    def test_item_splits_at_first_dot(self, client):
        resp = client.get("/vscode/item?itemName=ns.name.with.dots")
        assert resp.headers["Location"] == f"{WEBUI_URL}/extension/ns/name.with.dots"

    def test_item_without_dot_is_400(self, client):
        for url in ("/vscode/item", "/vscode/item?itemName=nodot"):
            resp = client.get(url)
            assert resp.status_code == 400
            assert "{publisher}.{name}" in resp.get_json()["message"]

    def test_vspackage_redirect(self, client):
        resp = client.get("/vscode/gallery/publishers/redhat/vsextensions/vscode-yaml/1.11.0/vspackage")
        assert resp.status_code == 302
        assert resp.headers["Location"] == f"http://localhost/vscode/asset/redhat/vscode-yaml/1.11.0/{VSIX}"

    def test_vspackage_target_downloads(self, client):
        resp = client.get(
            "/vscode/gallery/publishers/redhat/vsextensions/vscode-yaml/1.11.0/vspackage", follow_redirects=True
        )
        assert resp.status_code == 200
        assert resp.data == b"PK\x03\x04demo-vsix-1.11.0"


class TestCors:
    def test_allowed_origin_echoed(self, client):
        resp = client.post("/vscode/gallery/extensionquery", json={}, headers={"Origin": VSCODE_ORIGIN})
        assert resp.headers["Access-Control-Allow-Origin"] == VSCODE_ORIGIN
        assert resp.headers["Vary"] == "Origin"

    def test_other_origin_ignored(self, client):
        resp = client.post("/vscode/gallery/extensionquery", json={}, headers={"Origin": "https://evil.test"})
        assert "Access-Control-Allow-Origin" not in resp.headers

    def test_wildcard(self, app_factory):
        client = app_factory(cors_origins=("*",)).test_client()
        resp = client.get(f"/vscode/asset/redhat/vscode-yaml/1.11.0/{VSIX}", headers={"Origin": "https://any.test"})
        assert resp.headers["Access-Control-Allow-Origin"] == "https://any.test"

    def test_preflight(self, client):
        resp = client.options(
            "/vscode/gallery/extensionquery",
            headers={
                "Origin": VSCODE_ORIGIN,
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "content-type",
            },
        )
        assert resp.status_code in (200, 204)
        assert resp.headers["Access-Control-Allow-Origin"] == VSCODE_ORIGIN
        assert resp.headers["Access-Control-Allow-Headers"] == "content-type"
        assert "POST" in resp.headers["Access-Control-Allow-Methods"]


class TestApp:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.get_json()["ok"] is True

    def test_request_id_echoed(self, client):
        resp = client.get("/health", headers={"X-Request-Id": "abc123"})
        assert resp.headers["X-Request-Id"] == "abc123"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"

    def test_unknown_route_is_json_404(self, client):
        resp = client.get("/nope")
        assert resp.status_code == 404
        body = resp.get_json()
        assert body["status"] == 404
        assert body["requestId"]
