"""Human-readable trace IDs for correlating gateway log lines.

Format: {counter}_{hhmmss}_{convention}_{model}
Example: 00001_031333_openai_fast
"""

from __future__ import annotations

import itertools
import re
import time
from typing import Any

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


class RequestTracer:
    """Generates per-gateway sequential trace IDs.

    Each gateway owns its tracer, so counters of gateways running side by side
    in one process do not interfere.
    """

    def __init__(self) -> None:
        self._counter = itertools.count(1)

    def generate_trace_id(self, body: dict[str, Any], convention: str) -> str:
        """Generate a trace ID with sequence number and request context."""
        seq = next(self._counter)
        timestamp = time.strftime("%H%M%S")
        model = body.get("model") if isinstance(body, dict) else None
        context = _UNSAFE.sub("_", str(model))[:24] if model else "nomodel"
        return f"{seq:05d}_{timestamp}_{convention}_{context}"
