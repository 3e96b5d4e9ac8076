from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import PurePosixPath


def _normalize_pattern(pattern: str) -> str:
    normalized = pattern.strip().replace("\\", "/")
    if normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def _match_pattern(path: str, pattern: str) -> bool:
    norm = _normalize_pattern(pattern)
    if not norm:
        return False
    if norm.endswith("/"):
        return path.startswith(norm) or f"/{norm}" in f"/{path}"
    if fnmatchcase(path, norm):
        return True
    # `**/x` also matches `x` at the top of the tree.
    if norm.startswith("**/") and fnmatchcase(path, norm[3:]):
        return True
    # Bare names such as `*.tmp` match at any depth.
    if "/" not in norm:
        return PurePosixPath(path).match(norm)
    return False


@dataclass(slots=True)
class PathFilter:
    exclude_patterns: tuple[str, ...] = ()

    def matches(self, *paths: str) -> bool:
        """Return True when none of the given spellings of a path is ignored."""
        for path in paths:
            if any(_match_pattern(path, pattern) for pattern in self.exclude_patterns):
                return False
        return True


def build_path_filter(
    exclude_patterns: list[str] | tuple[str, ...] | None = None,
) -> PathFilter:
    exclude = tuple(_normalize_pattern(pattern) for pattern in (exclude_patterns or []) if pattern)
    return PathFilter(exclude_patterns=exclude)
