"""Server version detection and version-aware index option filtering."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from observability import get_logger

from .exceptions import UnsupportedServerVersionError

MINIMUM_SUPPORTED_VERSION: Tuple[int, int] = (4, 4)

# (introduced in, options) ordered by version
VERSIONED_INDEX_OPTIONS: Tuple[Tuple[Tuple[int, int], Tuple[str, ...]], ...] = (
    (
        (3, 0),
        (
            "unique",
            "expireAfterSeconds",
            "sparse",
            "storageEngine",
            "weights",
            "default_language",
            "language_override",
            "textIndexVersion",
            "2dsphereIndexVersion",
            "bits",
            "min",
            "max",
            "bucketSize",
        ),
    ),
    ((3, 2), ("partialFilterExpression",)),
    ((3, 4), ("collation",)),
    ((4, 2), ("wildcardProjection",)),
    ((4, 4), ("hidden",)),
    ((7, 0), ("columnstoreProjection",)),
)

_VERSION_RE = re.compile(r"^\s*(\d+)\.(\d+)")


@dataclass(frozen=True)
class ServerVersionInfo:
    major: int
    minor: int
    full: str

    @property
    def normalized(self) -> str:
        return f"{self.major}.{self.minor}"

    def at_least(self, major: int, minor: int = 0) -> bool:
        return (self.major, self.minor) >= (major, minor)


BASELINE_VERSION = ServerVersionInfo(3, 0, "3.0.0")


def parse_version(text: Any) -> ServerVersionInfo:
    """Parse "M.m[.p...]"; anything unparseable maps to the 3.0 baseline."""
    match = _VERSION_RE.match(str(text or ""))
    if not match:
        return BASELINE_VERSION
    return ServerVersionInfo(int(match.group(1)), int(match.group(2)), str(text).strip())


def allowed_index_options(version: ServerVersionInfo) -> List[str]:
    allowed: List[str] = []
    for (major, minor), options in VERSIONED_INDEX_OPTIONS:
        if version.at_least(major, minor):
            allowed.extend(options)
    return allowed


def validate_minimum_version(
    version: ServerVersionInfo, minimum: Tuple[int, int] = MINIMUM_SUPPORTED_VERSION
) -> bool:
    return version.at_least(*minimum)


def require_minimum_version(
    version: ServerVersionInfo, minimum: Tuple[int, int] = MINIMUM_SUPPORTED_VERSION
) -> None:
    if not validate_minimum_version(version, minimum):
        raise UnsupportedServerVersionError(version.full, f"{minimum[0]}.{minimum[1]}")


class VersionProbe:
    """Asks the server for ``buildInfo`` once and caches the answer."""

    def __init__(self, db: Any, logger: Any = None):
        self._db = db
        self._log = logger or get_logger("version_probe")
        self._version: Optional[ServerVersionInfo] = None

    async def detect(self) -> ServerVersionInfo:
        if self._version is not None:
            return self._version
        try:
            info = await self._db.client.admin.command({"buildInfo": 1})
            version = parse_version((info or {}).get("version"))
        except Exception as exc:
            self._log.warning("build_info_failed", error=str(exc), fallback=BASELINE_VERSION.full)
            version = BASELINE_VERSION
        self._log.info("server_version_detected", version=version.full, normalized=version.normalized)
        self._version = version
        return version


class OptionFilter:
    """Strips index options the detected server version does not understand."""

    def __init__(self, version: ServerVersionInfo, logger: Any = None):
        self.version = version
        self.allowed = frozenset(allowed_index_options(version))
        self._log = logger or get_logger("option_filter")

    def filter(self, options: Mapping[str, Any]) -> Dict[str, Any]:
        kept: Dict[str, Any] = {}
        for key, value in (options or {}).items():
            if key in self.allowed:
                kept[key] = value
            else:
                self._log.debug("index_option_dropped", option=key, version=self.version.normalized)
        return kept
