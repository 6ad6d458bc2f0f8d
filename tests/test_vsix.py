from __future__ import annotations

import io
import zipfile

import pytest
from conftest import build_vsix, todo_tree_package_json, todo_tree_vsix

from services.extensions_store import DOWNLOAD, ICON, LICENSE, MANIFEST, README, ExtensionReference
from services.vsix import VsixError, VsixReader, import_vsix


class TestVsixReader:
    """Metadata and resources read out of a .vsix archive."""

    def test_metadata(self):
        with VsixReader(todo_tree_vsix()) as reader:
            meta = reader.metadata()
        assert (meta.namespace, meta.name, meta.version) == ("Gruntfuggly", "todo-tree", "0.0.226")
        assert meta.display_name == "Todo Tree"
        assert meta.engines == ["vscode@^1.46.0"]
        assert meta.categories == ["Other"]
        assert meta.tags == ["todo", "task"]
        assert meta.repository == "https://github.com/Gruntfuggly/todo-tree"
        assert (meta.gallery_color, meta.gallery_theme) == ("#333333", "dark")
        # unqualified pack entries are dropped
        assert meta.bundled_extensions == [ExtensionReference("redhat", "vscode-yaml")]
        assert meta.preview is False

    def test_resources(self):
        with VsixReader(todo_tree_vsix()) as reader:
            resources = reader.resources()
        assert [(r.type, r.name) for r in resources] == [
            (DOWNLOAD, "Gruntfuggly.todo-tree-0.0.226.vsix"),
            (MANIFEST, "package.json"),
            (README, "README.md"),
            (LICENSE, "LICENSE.txt"),
            (ICON, "todo-tree.png"),
        ]

    def test_resources_found_without_vsixmanifest(self):
        pkg = todo_tree_package_json()
        pkg["icon"] = "./media/../resources/icon.png"
        data = build_vsix(
            pkg,
            files={
                "extension/README.md": b"# readme\n",
                "extension/LICENSE": b"MIT\n",
                "extension/resources/icon.png": b"png",
            },
        )
        with VsixReader(data) as reader:
            names = {r.type: r.name for r in reader.resources()}
        assert names[README] == "README.md"
        assert names[LICENSE] == "LICENSE"
        assert names[ICON] == "icon.png"

    def test_vsixmanifest_paths_with_single_quotes(self):
        manifest = (
            "<?xml version='1.0' encoding='utf-8'?>\n"
            "<PackageManifest Version='2.0.0' xmlns='http://schemas.microsoft.com/developer/vsx-schema/2011'>\n"
            "  <Metadata><License> extension/docs/TERMS.rst </License></Metadata>\n"
            "  <Assets>\n"
            "    <Asset Addressable='true' Path='extension/docs/guide.md'\n"
            "           Type='Microsoft.VisualStudio.Services.Content.Details' />\n"
            "  </Assets>\n"
            "</PackageManifest>\n"
        )
        data = build_vsix(
            files={
                "extension/docs/guide.md": b"# guide\n",
                "extension/docs/TERMS.rst": b"terms\n",
                "extension/README.md": b"# wrong readme\n",
            },
            vsixmanifest=manifest,
        )
        with VsixReader(data) as reader:
            found = {r.type: r for r in reader.resources()}
        assert (found[README].name, found[README].content) == ("guide.md", b"# guide\n")
        assert (found[LICENSE].name, found[LICENSE].content) == ("TERMS.rst", b"terms\n")

    def test_malformed_vsixmanifest_falls_back_to_file_names(self):
        data = build_vsix(files={"extension/README.md": b"# readme\n"}, vsixmanifest="<PackageManifest><Assets>")
        with VsixReader(data) as reader:
            names = {r.type: r.name for r in reader.resources()}
        assert names[README] == "README.md"
        assert LICENSE not in names

    def test_optional_resources_missing(self):
        pkg = todo_tree_package_json()
        del pkg["icon"]
        with VsixReader(build_vsix(pkg)) as reader:
            assert [r.type for r in reader.resources()] == [DOWNLOAD, MANIFEST]

    def test_not_a_zip(self):
        with pytest.raises(VsixError):
            VsixReader(b"hello world")
        with pytest.raises(VsixError):
            VsixReader(b"PK\x03\x04garbage")

    def test_missing_package_json(self):
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as zf:
            zf.writestr("extension/README.md", b"# nothing\n")
        with pytest.raises(VsixError):
            VsixReader(buf.getvalue())

    def test_missing_version(self):
        pkg = todo_tree_package_json()
        del pkg["version"]
        with VsixReader(build_vsix(pkg)) as reader:
            with pytest.raises(VsixError):
                reader.metadata()


class TestImportVsix:
    def test_import_creates_version_and_files(self, store):
        ev = import_vsix(store, todo_tree_vsix())
        assert ev.extension.qualified_name == "Gruntfuggly.todo-tree"
        assert ev.version == "0.0.226"
        assert set(store.list_file_names(ev)) == {DOWNLOAD, MANIFEST, README, LICENSE, ICON}
        assert store.find_file(ev, DOWNLOAD).content == todo_tree_vsix()

    def test_failed_file_write_leaves_nothing_behind(self, store, monkeypatch):
        add_file = store.add_file

        def failing_add_file(version, file_type, name, content):
            if file_type == ICON:
                raise RuntimeError("disk full")
            return add_file(version, file_type, name, content)

        monkeypatch.setattr(store, "add_file", failing_add_file)
        with pytest.raises(RuntimeError):
            import_vsix(store, todo_tree_vsix())

        assert store.find_extension("todo-tree", "Gruntfuggly") is None
        assert store.find_version("0.0.226", "todo-tree", "Gruntfuggly") is None

        monkeypatch.undo()
        ev = import_vsix(store, todo_tree_vsix())
        assert set(store.list_file_names(ev)) == {DOWNLOAD, MANIFEST, README, LICENSE, ICON}

    def test_import_into_existing_extension(self, seeded_store):
        ev = import_vsix(seeded_store, todo_tree_vsix())
        ext = seeded_store.find_extension("todo-tree", "Gruntfuggly")
        assert ext.latest_id == ev.id
        assert len(seeded_store.find_versions(ext)) == 2
