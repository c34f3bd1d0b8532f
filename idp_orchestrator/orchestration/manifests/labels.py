"""Label and annotation conventions stamped on every generated document."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from ..models import utcnow

PLATFORM_NAME = "idp-platform"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
CREATED_AT_ANNOTATION = "idp-platform/created-at"


def managed_labels(**extra: str) -> Dict[str, str]:
    labels = {MANAGED_BY_LABEL: PLATFORM_NAME}
    labels.update(extra)
    return labels


def created_at(generated_at: Optional[datetime] = None) -> str:
    return (generated_at or utcnow()).isoformat()


def is_platform_managed(document: Dict) -> bool:
    labels = document.get("metadata", {}).get("labels") or {}
    return labels.get(MANAGED_BY_LABEL) == PLATFORM_NAME


__all__ = [
    "PLATFORM_NAME",
    "MANAGED_BY_LABEL",
    "CREATED_AT_ANNOTATION",
    "managed_labels",
    "created_at",
    "is_platform_managed",
]
