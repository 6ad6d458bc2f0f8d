from __future__ import annotations

import pytest

from services.errors import SearchQueryError
from services.extensions_search import ExtensionSearch, PageRequest


def _ids(page):
    return [h.id for h in page.hits]


class TestIndexing:
    def test_rebuild_counts_extensions(self, seeded_store):
        assert ExtensionSearch(seeded_store).rebuild() == 3

    def test_extension_without_versions_not_indexed(self, search, seeded_store):
        ext = seeded_store.create_extension(seeded_store.create_namespace("acme"), "unreleased")
        search.update_search_entry(ext)
        page = search.search("unreleased", None, PageRequest(0, 20), "desc", "relevance")
        assert page.total == 0

    def test_update_refreshes_counters(self, search, seeded_store):
        ext = seeded_store.find_extension("todo-tree", "Gruntfuggly")
        search.update_search_entry(seeded_store.increment_download_count(ext))
        page = search.search(None, None, PageRequest(0, 20), "desc", "downloadCount")
        assert _ids(page)[0] == ext.id


class TestSearch:
    def test_text_match_by_relevance(self, search):
        page = search.search("yaml", None, PageRequest(0, 20), "desc", "relevance")
        # name and display name beat a description-only match
        assert _ids(page) == [1, 3]
        assert page.total == 2
        assert page.hits[0].score > page.hits[1].score

    def test_category_filter_ignores_case(self, search):
        page = search.search(None, "other", PageRequest(0, 20), "desc", "relevance")
        assert _ids(page) == [2]

    def test_no_text_returns_everything(self, search):
        page = search.search(None, None, PageRequest(0, 20), "desc", "relevance")
        assert _ids(page) == [1, 2, 3]

    def test_total_counts_all_matches_not_the_page(self, search):
        page = search.search(None, None, PageRequest(1, 1), "desc", "relevance")
        assert _ids(page) == [2]
        assert page.total == 3

    def test_page_past_the_end(self, search):
        page = search.search(None, None, PageRequest(5, 20), "desc", "relevance")
        assert page.hits == []
        assert page.total == 3

    def test_sort_by_rating(self, search):
        page = search.search(None, None, PageRequest(0, 20), "desc", "averageRating")
        assert _ids(page)[0] == 1
        asc = search.search(None, None, PageRequest(0, 20), "asc", "averageRating")
        assert _ids(asc)[-1] == 1

    def test_sort_by_timestamp(self, search):
        # demo.language-pack 0.2.0 and redhat.vscode-yaml 1.12.0-next.1 are both newer than todo-tree
        page = search.search(None, None, PageRequest(0, 20), "asc", "timestamp")
        assert _ids(page)[0] == 2

    @pytest.mark.parametrize(
        "text,page_request,order,sort_by",
        [
            (None, PageRequest(-1, 20), "desc", "relevance"),
            (None, PageRequest(0, 0), "desc", "relevance"),
            (None, PageRequest(0, 101), "desc", "relevance"),
            (None, PageRequest(0, 20), "up", "relevance"),
            (None, PageRequest(0, 20), "desc", "name"),
            ("x" * 257, PageRequest(0, 20), "desc", "relevance"),
        ],
    )
    def test_invalid_queries(self, search, text, page_request, order, sort_by):
        with pytest.raises(SearchQueryError):
            search.search(text, None, page_request, order, sort_by)
