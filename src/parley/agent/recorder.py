"""
Request-scoped ledger of model invocations.

A :class:`CallRecorder` is created per inbound request and handed to every stage that talks to a
model.  The ledger it builds is returned to the caller for diagnostics and is never persisted.
"""

import logging
from typing import (
    Any,
    List,
    Mapping,
    Tuple,
)

from pydantic_core import to_jsonable_python

from parley.core.schema import (
    CallStage,
    LLMCallRecord,
    Usage,
)

logger = logging.getLogger(__name__)


class CallRecorder:
    """Append-only collection of :class:`LLMCallRecord` for one request."""

    def __init__(self) -> None:
        self._records: List[LLMCallRecord] = []

    def record(
        self,
        stage: CallStage,
        description: str,
        request: Mapping[str, Any],
        response: Mapping[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Append a record for a finished model call.

        Payloads are converted to JSON-compatible values up front so the ledger can always be
        serialised verbatim.  Any failure here is logged and swallowed: diagnostics must never
        fail the request.
        """
        try:
            entry = LLMCallRecord(
                stage=stage,
                description=description,
                request=to_jsonable_python(dict(request), fallback=repr),
                response=to_jsonable_python(dict(response), fallback=repr),
                duration_ms=round(duration_ms, 3),
            )
        except Exception:  # pylint: disable=broad-except
            logger.warning("Dropping LLM call record for stage '%s'", stage, exc_info=True)
            return
        self._records.append(entry)
        logger.debug("Recorded %s call (%.1f ms): %s", stage.value, duration_ms, description)

    def ledger(self) -> Tuple[LLMCallRecord, ...]:
        """Return a snapshot of the ledger in call order."""
        return tuple(self._records)

    def usage(self) -> Usage:
        """Token usage summed over every recorded call that reported it."""
        total = Usage()
        for entry in self._records:
            raw = entry.response.get("usage")
            if isinstance(raw, dict):
                total = total + Usage(
                    prompt_tokens=raw.get("prompt_tokens") or 0,
                    completion_tokens=raw.get("completion_tokens") or 0,
                    total_tokens=raw.get("total_tokens") or 0,
                )
        return total

    def __len__(self) -> int:
        return len(self._records)
