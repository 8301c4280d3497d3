"""Dispatches model-requested tool calls to the tool service and wraps every outcome as data."""

import asyncio
import logging
import time
from typing import (
    Any,
    List,
    Mapping,
    Optional,
    Sequence,
)

from parley.core.schema import (
    AuthContext,
    ToolCallRequest,
    ToolErrorDetail,
    ToolErrorKind,
    ToolResult,
)
from parley.tools import (
    TOOL_NAME_CORRECTIONS,
    ToolCatalogue,
)
from parley.tools.services import (
    ToolError,
    ToolService,
)

logger = logging.getLogger(__name__)


class ToolInvoker:
    """
    Execute tool calls for one agent within one request.

    Parameters
    ----------
    service:
        Back-end that actually runs the tool.
    catalogue:
        Tools the agent is permitted to call.  Anything else is rejected with
        ``permission_denied``; no other tool is ever substituted.
    auth:
        Caller credentials, forwarded to the service unchanged.
    agent_id:
        Identity of the agent the calls are made on behalf of.
    corrections:
        Alias -> canonical name table applied before the catalogue check.
    timeout:
        Seconds allowed per call.
    parallel:
        Run the calls of one model turn concurrently.
    """

    def __init__(
        self,
        service: ToolService,
        catalogue: ToolCatalogue,
        auth: AuthContext,
        agent_id: str,
        corrections: Optional[Mapping[str, str]] = None,
        timeout: float = 30.0,
        parallel: bool = True,
    ) -> None:
        self._service = service
        self._catalogue = catalogue
        self._auth = auth
        self._agent_id = agent_id
        self._corrections = TOOL_NAME_CORRECTIONS if corrections is None else corrections
        self._timeout = timeout
        self._parallel = parallel

    @property
    def catalogue(self) -> ToolCatalogue:
        """Tools this invoker will dispatch."""
        return self._catalogue

    def resolve_name(self, name: str) -> str:
        """Map a requested tool name to the catalogue name it should run as."""
        if name in self._catalogue:
            return name
        corrected = self._corrections.get(name)
        if corrected is not None and corrected in self._catalogue:
            logger.info("Correcting tool name '%s' -> '%s'", name, corrected)
            return corrected
        return name

    async def invoke(self, call: ToolCallRequest) -> ToolResult:
        """
        Run a single tool call.

        Never raises for tool-level problems: a missing permission, invalid arguments, a timeout
        or a service failure all come back as a ToolResult with ``success=False``.
        """
        start = time.perf_counter()
        name = self.resolve_name(call.name)

        def _failed(kind: ToolErrorKind, message: str) -> ToolResult:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.warning(
                "Tool '%s' (call %s) failed [%s]: %s", name, call.id, kind.value, message
            )
            return ToolResult(
                call_id=call.id,
                tool_name=name,
                success=False,
                error=ToolErrorDetail(kind=kind, message=message),
                duration_ms=duration_ms,
            )

        if name not in self._catalogue:
            return _failed(
                ToolErrorKind.PERMISSION_DENIED,
                f"Tool '{call.name}' is not available to this agent.",
            )
        if call.arguments_error is not None:
            return _failed(ToolErrorKind.INVALID_ARGUMENTS, call.arguments_error)

        try:
            payload: Any = await asyncio.wait_for(
                self._service.invoke(name, call.arguments, self._auth, self._agent_id),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            return _failed(ToolErrorKind.TIMEOUT, f"Tool '{name}' timed out after {self._timeout}s")
        except ToolError as exc:
            return _failed(exc.kind, str(exc))
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Unexpected error dispatching tool '%s'", name)
            return _failed(ToolErrorKind.UPSTREAM, f"Tool '{name}' raised an error: {exc}")

        duration_ms = (time.perf_counter() - start) * 1000
        logger.info("Tool '%s' (call %s) completed in %.1f ms", name, call.id, duration_ms)
        return ToolResult(
            call_id=call.id,
            tool_name=name,
            success=True,
            payload=payload,
            duration_ms=duration_ms,
        )

    async def invoke_all(self, calls: Sequence[ToolCallRequest]) -> List[ToolResult]:
        """Run *calls* and return their results in request order, whatever the completion order."""
        if self._parallel and len(calls) > 1:
            return list(await asyncio.gather(*(self.invoke(call) for call in calls)))
        results: List[ToolResult] = []
        for call in calls:
            results.append(await self.invoke(call))
        return results
