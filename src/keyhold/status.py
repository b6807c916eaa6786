"""Reading of the status descriptor the agent keeps in its node path."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger

from .config import STATUS_FILE

STATUS_STARTING = "STARTING"
STATUS_LIVE = "LIVE"
STATUS_STOPPING = "STOPPING"
STATUS_DEAD = "DEAD"
STATUSES = (STATUS_STARTING, STATUS_LIVE, STATUS_STOPPING, STATUS_DEAD)


@dataclass(frozen=True)
class StatusInfo:
    status: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def live(self) -> bool:
        return self.status == STATUS_LIVE

    @property
    def node_id(self) -> Optional[str]:
        return self.data.get("nodeId")

    @property
    def client_host(self) -> Optional[str]:
        return self.data.get("clientHost")

    @property
    def client_port(self) -> Optional[int]:
        return self.data.get("clientPort")


DEAD = StatusInfo(status=STATUS_DEAD)


def status_path(node_path: Path) -> Path:
    return Path(node_path) / STATUS_FILE


def read_status(node_path: Path) -> Optional[StatusInfo]:
    """Return the agent status, or ``None`` if it cannot be read.

    A missing or malformed descriptor is indistinguishable from a dead agent.
    """

    path = status_path(node_path)
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.debug("Ignoring unreadable status file {}: {}", path, exc)
        return None
    if not isinstance(payload, dict):
        return None
    status = payload.get("status")
    data = payload.get("data")
    if status not in STATUSES or not isinstance(data, dict):
        logger.debug("Ignoring malformed status file {}", path)
        return None
    if status == STATUS_LIVE:
        if not (
            isinstance(data.get("nodeId"), str)
            and isinstance(data.get("clientHost"), str)
            and isinstance(data.get("clientPort"), int)
        ):
            logger.debug("Ignoring LIVE status without client coordinates in {}", path)
            return None
    return StatusInfo(status=status, data=dict(data))
