"""
Resource key normalization.

A request path is turned into a ``ResourceKey`` or rejected. Nothing is
silently rewritten beyond collapsing empty segments, so a key that exists
always addresses a location strictly below the cache root.
"""

import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Tuple

from shared.errors import InvalidPathError

MAX_PATH_LENGTH = 1024
MAX_SEGMENT_BYTES = 255

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_DRIVE_SEGMENT = re.compile(r"^[A-Za-z]:")


@dataclass(frozen=True)
class ResourceKey:
    """Normalized identifier of a cached resource."""

    segments: Tuple[str, ...]

    @classmethod
    def from_path(cls, raw_path: str) -> "ResourceKey":
        """Normalize ``raw_path`` or raise ``InvalidPathError``."""
        if not isinstance(raw_path, str):
            raise InvalidPathError("Path must be a string", details={"path": repr(raw_path)})

        if len(raw_path) > MAX_PATH_LENGTH:
            raise InvalidPathError("Path too long", details={"length": len(raw_path)})

        if _CONTROL_CHARS.search(raw_path):
            raise InvalidPathError("Path contains control characters", details={"path": repr(raw_path)})

        if "\\" in raw_path:
            raise InvalidPathError("Path contains a backslash", details={"path": raw_path})

        segments = tuple(segment for segment in raw_path.split("/") if segment)
        if not segments:
            raise InvalidPathError("Path does not name a resource", details={"path": raw_path})

        for segment in segments:
            if segment in (".", ".."):
                raise InvalidPathError("Path contains a relative segment", details={"path": raw_path})
            if _DRIVE_SEGMENT.match(segment):
                raise InvalidPathError("Path contains a drive specifier", details={"path": raw_path})
            if len(segment.encode("utf-8")) > MAX_SEGMENT_BYTES:
                raise InvalidPathError("Path segment too long", details={"segment": segment[:32]})

        return cls(segments)

    @property
    def path(self) -> str:
        """Canonical URL path form, always with a leading slash."""
        return "/" + "/".join(self.segments)

    @property
    def name(self) -> str:
        return self.segments[-1]

    def relative_path(self) -> PurePosixPath:
        """Location of the entry relative to the cache root."""
        return PurePosixPath(*self.segments)

    def __str__(self) -> str:
        return self.path
