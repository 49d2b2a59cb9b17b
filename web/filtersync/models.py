from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, List


# Change flags returned by FilterStorage.modify().
STATUS_CHANGED_ENABLED = 1
STATUS_CHANGED_URL = 2

# Observer events.
EVENT_BEFORE_UPDATE = 1
EVENT_AFTER_UPDATE = 2


DEFAULT_UPDATE_INTERVAL_HOURS = 24
DEFAULT_HTTP_TIMEOUT = 30
DEFAULT_MAX_DOWNLOAD_BYTES = 64 * 1024 * 1024
DEFAULT_USER_AGENT = "filtersync/1.0"


@dataclass
class FilterDescriptor:
    """One filter list source.

    `path` is never stored: it is filled in on copies handed out by the
    storage, as `<filter_dir>/<id>.txt` (or the staged file during a pass).
    """

    url: str
    name: str = ""
    enabled: bool = True
    id: int = 0
    last_updated: int = 0
    last_modified: str = ""
    rule_count: int = 0
    next_update: int = field(default=0, compare=False)
    network_error: bool = field(default=False, compare=False)
    path: str = field(default="", compare=False)

    def copy(self, **changes: Any) -> "FilterDescriptor":
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": int(self.id),
            "name": self.name,
            "url": self.url,
            "enabled": bool(self.enabled),
            "last_updated": int(self.last_updated),
            "last_modified": self.last_modified,
            "rule_count": int(self.rule_count),
            "network_error": bool(self.network_error),
            "path": self.path,
        }


@dataclass
class FilterConf:
    filter_dir: str
    update_interval_hours: int = DEFAULT_UPDATE_INTERVAL_HOURS
    filters: List[FilterDescriptor] = field(default_factory=list)
    http_timeout: int = DEFAULT_HTTP_TIMEOUT
    max_download_bytes: int = DEFAULT_MAX_DOWNLOAD_BYTES
    user_agent: str = DEFAULT_USER_AGENT

    @property
    def update_interval_seconds(self) -> int:
        return max(0, int(self.update_interval_hours)) * 60 * 60

    def copy(self) -> "FilterConf":
        return dataclasses.replace(self, filters=[f.copy() for f in self.filters])
