"""Helpers for emitting structured batch-job progress events."""

from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from datetime import UTC, datetime


EVENT_PREFIX = "BATCH_PROGRESS"
JOB_ENV = "WALLET_ANALYTICS_JOB"


@dataclass(frozen=True)
class ProgressEvent:
    job: str
    stage: str
    current: float
    total: float
    detail: str
    timestamp: str

    def to_json(self) -> str:
        payload = {
            "job": self.job,
            "stage": self.stage,
            "current": self.current,
            "total": self.total,
            "detail": self.detail,
            "timestamp": self.timestamp,
        }
        return json.dumps(payload, separators=(",", ":"))


def emit_progress(
    stage: str,
    current: float,
    total: float,
    detail: str = "",
    *,
    job: str | None = None,
) -> ProgressEvent | None:
    """Print a structured progress event for the active batch job.

    The job name comes from ``job`` or the WALLET_ANALYTICS_JOB environment
    variable; nothing is emitted when neither is set or ``total`` is not
    positive.
    """

    job = job or os.environ.get(JOB_ENV)
    if not job or total <= 0:
        return None
    event = ProgressEvent(
        job=job,
        stage=stage,
        current=current,
        total=total,
        detail=detail,
        timestamp=datetime.now(UTC).isoformat(),
    )
    print(f"{EVENT_PREFIX} {event.to_json()}", file=sys.stdout, flush=True)
    return event
