from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from services.errors import BadRequestError
from services.extensions_search import (
    ORDER_ASC,
    ORDER_DESC,
    SORT_AVERAGE_RATING,
    SORT_DOWNLOAD_COUNT,
    SORT_RELEVANCE,
    SORT_TIMESTAMP,
)


# =========================
# gallery protocol constants
# =========================

FLAG_INCLUDE_VERSIONS = 0x1
FLAG_INCLUDE_FILES = 0x2
FLAG_INCLUDE_CATEGORY_AND_TAGS = 0x4
FLAG_INCLUDE_SHARED_ACCOUNTS = 0x8
FLAG_INCLUDE_VERSION_PROPERTIES = 0x10
FLAG_EXCLUDE_NON_VALIDATED = 0x20
FLAG_INCLUDE_INSTALLATION_TARGETS = 0x40
FLAG_INCLUDE_ASSET_URI = 0x80
FLAG_INCLUDE_STATISTICS = 0x100
FLAG_INCLUDE_LATEST_VERSION_ONLY = 0x200
FLAG_UNPUBLISHED = 0x1000

FILTER_TAG = 1
FILTER_EXTENSION_ID = 4
FILTER_CATEGORY = 5
FILTER_EXTENSION_NAME = 7
FILTER_TARGET = 8
FILTER_FEATURED = 9
FILTER_SEARCH_TEXT = 10
FILTER_EXCLUDE_WITH_FLAGS = 12

DEFAULT_PAGE_NUMBER = 1
DEFAULT_PAGE_SIZE = 20

_SORT_BY = {
    4: SORT_DOWNLOAD_COUNT,  # InstallCount
    5: SORT_TIMESTAMP,  # PublishedDate
    6: SORT_AVERAGE_RATING,  # AverageRating
}


@dataclass(frozen=True)
class QueryFlags:
    """Detail-level bitmask sent by the client, with one predicate per bit the adapter honours."""

    value: int = 0

    def _test(self, flag: int) -> bool:
        return (self.value & flag) != 0

    def has_latest_only(self) -> bool:
        return self._test(FLAG_INCLUDE_LATEST_VERSION_ONLY)

    def has_all_versions(self) -> bool:
        return self._test(FLAG_INCLUDE_VERSIONS)

    def has_version_properties(self) -> bool:
        return self._test(FLAG_INCLUDE_VERSION_PROPERTIES)

    def has_asset_uri(self) -> bool:
        return self._test(FLAG_INCLUDE_ASSET_URI)

    def has_files(self) -> bool:
        return self._test(FLAG_INCLUDE_FILES)

    def has_statistics(self) -> bool:
        return self._test(FLAG_INCLUDE_STATISTICS)

    def has_category_and_tags(self) -> bool:
        return self._test(FLAG_INCLUDE_CATEGORY_AND_TAGS)

    def wants_version_list(self) -> bool:
        # "all versions" and "properties" both enumerate every version
        return self.has_all_versions() or self.has_version_properties()


# =========================
# query model
# =========================

@dataclass(frozen=True)
class Criterion:
    filter_type: int
    value: str


@dataclass(frozen=True)
class QueryFilter:
    criteria: List[Criterion] = field(default_factory=list)
    page_number: int = DEFAULT_PAGE_NUMBER
    page_size: int = DEFAULT_PAGE_SIZE
    sort_by: int = 0
    sort_order: int = 0

    def find_criteria(self, filter_type: int) -> List[str]:
        return [c.value for c in self.criteria if c.filter_type == filter_type]

    def find_criterion(self, filter_type: int) -> Optional[str]:
        for c in self.criteria:
            if c.filter_type == filter_type:
                return c.value
        return None


@dataclass(frozen=True)
class ExtensionQuery:
    filters: List[QueryFilter] = field(default_factory=list)
    flags: QueryFlags = field(default_factory=QueryFlags)


def _int_field(obj: Dict[str, Any], key: str, default: int) -> int:
    v = obj.get(key)
    if v is None:
        return default
    if isinstance(v, bool) or (isinstance(v, float) and not v.is_integer()):
        raise BadRequestError(f"Invalid integer for '{key}'")
    try:
        return int(v)
    except (TypeError, ValueError):
        raise BadRequestError(f"Invalid integer for '{key}'") from None


def parse_query(payload: Any) -> ExtensionQuery:
    # Decode the JSON body of an extensionquery request
    if not isinstance(payload, dict):
        raise BadRequestError("Expecting a JSON object")

    raw_filters = payload.get("filters") or []
    if not isinstance(raw_filters, list):
        raise BadRequestError("'filters' must be a list")

    filters: List[QueryFilter] = []
    for f in raw_filters:
        if not isinstance(f, dict):
            raise BadRequestError("Each filter must be an object")
        criteria: List[Criterion] = []
        for c in f.get("criteria") or []:
            if not isinstance(c, dict):
                continue
            val = c.get("value")
            if val is None:
                continue
            criteria.append(Criterion(filter_type=_int_field(c, "filterType", 0), value=str(val)))
        filters.append(
            QueryFilter(
                criteria=criteria,
                page_number=_int_field(f, "pageNumber", DEFAULT_PAGE_NUMBER),
                page_size=_int_field(f, "pageSize", DEFAULT_PAGE_SIZE),
                sort_by=_int_field(f, "sortBy", 0),
                sort_order=_int_field(f, "sortOrder", 0),
            )
        )

    return ExtensionQuery(filters=filters, flags=QueryFlags(_int_field(payload, "flags", 0)))


# =========================
# criteria extraction
# =========================

@dataclass(frozen=True)
class IdLookup:
    ids: List[str]


@dataclass(frozen=True)
class NameLookup:
    names: List[str]


@dataclass(frozen=True)
class SearchRequest:
    text: Optional[str] = None
    category: Optional[str] = None
    page: int = 0
    size: int = DEFAULT_PAGE_SIZE
    sort_by: str = SORT_RELEVANCE
    sort_order: str = ORDER_DESC


LookupRequest = Union[IdLookup, NameLookup, SearchRequest]


def sort_by_key(code: int) -> str:
    return _SORT_BY.get(code, SORT_RELEVANCE)


def sort_order_key(code: int) -> str:
    return ORDER_ASC if code == 1 else ORDER_DESC


def extract_request(query: ExtensionQuery) -> LookupRequest:
    """
    Reduce a gallery query to the lookup that answers it.

    Only the first filter counts. Extension ids win over names, names win over
    search criteria; page numbers are converted to zero-based indexes but not
    validated here.
    """
    if not query.filters:
        return SearchRequest()

    f0 = query.filters[0]

    ids = f0.find_criteria(FILTER_EXTENSION_ID)
    if ids:
        return IdLookup(ids)

    names = f0.find_criteria(FILTER_EXTENSION_NAME)
    if names:
        return NameLookup(names)

    text = f0.find_criterion(FILTER_SEARCH_TEXT)
    if text is None:
        text = f0.find_criterion(FILTER_TAG)

    return SearchRequest(
        text=text,
        category=f0.find_criterion(FILTER_CATEGORY),
        page=f0.page_number - 1,
        size=f0.page_size,
        sort_by=sort_by_key(f0.sort_by),
        sort_order=sort_order_key(f0.sort_order),
    )
