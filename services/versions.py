from __future__ import annotations

import re
from typing import Iterable, List, Optional, Tuple, TypeVar

from packaging.version import InvalidVersion, Version


T = TypeVar("T")

_semverish_re = re.compile(
    r"^v?(?P<num>\d+(?:\.\d+)*)(?:-(?P<pre>[0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?$"
)

# Rank of unparsable strings vs. real versions
_UNPARSED = 0
_PARSED = 1


def _pad_release(nums: Iterable[int]) -> Tuple[int, ...]:
    # 1.2 and 1.2.0 compare equal on the release part
    out = list(nums)
    while len(out) < 3:
        out.append(0)
    while len(out) > 3 and out[-1] == 0:
        out.pop()
    return tuple(out)


def _pre_ident(part: str) -> Tuple[int, int, str]:
    # Numeric identifiers sort numerically and before alphanumeric ones
    if part.isdigit():
        return (0, int(part), "")
    return (1, 0, part.lower())


def _semver_key(s: str) -> Optional[Tuple]:
    # Any "-suffix" is a pre-release, compared identifier by identifier
    m = _semverish_re.fullmatch(s)
    if not m:
        return None
    nums = _pad_release(int(x) for x in m.group("num").split("."))
    pre = m.group("pre")
    is_final = 1 if pre is None else 0
    pre_key = () if pre is None else tuple(_pre_ident(p) for p in pre.split(".") if p)
    return (_PARSED, nums, is_final, pre_key, 0, s.lower(), s)


def _pep440_key(s: str) -> Tuple:
    try:
        v = Version(s)
    except InvalidVersion:
        return (_UNPARSED, (), 0, (), 0, s.lower(), s)
    pre = v.pre
    if v.dev is not None and pre is None:
        pre = ("dev", v.dev)
    is_final = 1 if pre is None else 0
    pre_key = () if pre is None else (_pre_ident(pre[0]), _pre_ident(str(pre[1])))
    return (_PARSED, _pad_release(v.release), is_final, pre_key, v.post or 0, s.lower(), s)


def version_key(version: str) -> Tuple:
    """
    Total-order sort key for extension version strings.

    Semantic versions (1.2.3, 1.2.3-beta.1, 1.0.0-1) are read first: every
    hyphen suffix is a pre-release and sorts below its release. Strings that
    are not semver (1.0rc1, 1.0.post2) go through packaging.version with the
    same key layout. Strings that parse neither way sort below everything else.
    The raw string is the final tie-break so distinct inputs never compare equal.
    """
    s = (version or "").strip()
    key = _semver_key(s)
    return key if key is not None else _pep440_key(s)


def sort_versions(versions: Iterable[T]) -> List[T]:
    # Newest first; timestamp breaks ties between equal version strings
    return sorted(
        versions,
        key=lambda ev: (version_key(ev.version), ev.timestamp),  # type: ignore[attr-defined]
        reverse=True,
    )


def max_version(versions: Iterable[T]) -> Optional[T]:
    ordered = sort_versions(versions)
    return ordered[0] if ordered else None
