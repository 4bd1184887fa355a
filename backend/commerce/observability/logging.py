"""Structured logging helper for commerce events operators need to correlate."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger("commerce")


def log_commerce_event(*, message: str, request_id: Optional[str] = None, workspace_id: Optional[str] = None,
                       actor: Optional[str] = None, extra: Optional[Dict[str, Any]] = None,
                       level: int = logging.INFO) -> None:
    payload: Dict[str, Any] = {"message": message}
    if request_id:
        payload["request_id"] = request_id
    if workspace_id:
        payload["workspace_id"] = str(workspace_id)
    if actor:
        payload["actor"] = actor
    if extra:
        payload.update(extra)
    logger.log(level, payload)


def mask_identifier(value: Optional[str]) -> Optional[str]:
    """Keep only the last four characters of a gateway identifier."""
    if not value:
        return value
    return f"...{value[-4:]}"
