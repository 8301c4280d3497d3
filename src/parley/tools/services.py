"""
Back-ends that actually execute tools.

:class:`HttpToolService` talks to the external tool-execution service over a pooled
``httpx.AsyncClient``; :class:`LocalToolService` runs functions from ``TOOL_REGISTRY`` in-process.
Both raise :class:`ToolError` with a :class:`ToolErrorKind` on failure.
"""

import asyncio
import inspect
import logging
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    Dict,
    List,
    Mapping,
    Optional,
)

import httpx

from parley.config import settings
from parley.core.schema import (
    AuthContext,
    ToolErrorKind,
)
from parley.tools import (
    TOOL_REGISTRY,
    ToolSpec,
    get_tool_specs,
)

logger = logging.getLogger(__name__)


class ToolError(RuntimeError):
    """Raised when a requested tool cannot run or fails."""

    def __init__(self, kind: ToolErrorKind, message: str) -> None:
        self.kind = kind
        super().__init__(message)


class ToolService(ABC):
    """Anything that can list and run tools on behalf of an agent."""

    @abstractmethod
    async def list_tools(self, agent_id: str, auth: AuthContext) -> List[ToolSpec]:
        """Return the tools *agent_id* is permitted to call."""

    @abstractmethod
    async def invoke(
        self, tool_name: str, args: Mapping[str, Any], auth: AuthContext, agent_id: str
    ) -> Any:
        """Run *tool_name* and return its payload, or raise :class:`ToolError`."""

    async def aclose(self) -> None:
        """Release any pooled resources."""


# ---------------------------------------------------------------------------
# HTTP back-end
# ---------------------------------------------------------------------------
_STATUS_KINDS: Mapping[int, ToolErrorKind] = {
    401: ToolErrorKind.PERMISSION_DENIED,
    403: ToolErrorKind.PERMISSION_DENIED,
    404: ToolErrorKind.NOT_FOUND,
    408: ToolErrorKind.TIMEOUT,
    422: ToolErrorKind.INVALID_ARGUMENTS,
    504: ToolErrorKind.TIMEOUT,
}


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text or resp.reason_phrase
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and "message" in error:
            return str(error["message"])
        if "detail" in data:
            return str(data["detail"])
    return str(data)


class HttpToolService(ToolService):
    """
    Client for the external tool-execution service.

    Endpoints used:

    - ``GET  /agents/{agent_id}/tools`` -> ``[{"name", "description", "parameters"}, ...]``
    - ``POST /invoke`` with ``{"tool_name", "arguments", "agent_id"}`` ->
      ``{"success": bool, "result": ..., "error": {"kind", "message"}}``

    The caller's ``Authorization`` header is forwarded unchanged on every request.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
        )

    @staticmethod
    def _headers(auth: AuthContext) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if auth.authorization:
            headers["Authorization"] = auth.authorization
        if auth.user_id:
            headers["X-User-Id"] = auth.user_id
        return headers

    async def list_tools(self, agent_id: str, auth: AuthContext) -> List[ToolSpec]:
        try:
            resp = await self._client.get(f"/agents/{agent_id}/tools", headers=self._headers(auth))
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            kind = _STATUS_KINDS.get(exc.response.status_code, ToolErrorKind.UPSTREAM)
            raise ToolError(kind, _error_message(exc.response)) from exc
        except httpx.HTTPError as exc:
            raise ToolError(ToolErrorKind.UPSTREAM, f"Tool listing failed: {exc}") from exc

        tools = resp.json()
        if isinstance(tools, dict):
            tools = tools.get("tools", [])
        return [ToolSpec.model_validate(tool) for tool in tools]

    async def invoke(
        self, tool_name: str, args: Mapping[str, Any], auth: AuthContext, agent_id: str
    ) -> Any:
        payload = {"tool_name": tool_name, "arguments": dict(args), "agent_id": agent_id}
        logger.debug("POST /invoke tool=%s agent=%s", tool_name, agent_id)
        try:
            resp = await self._client.post("/invoke", json=payload, headers=self._headers(auth))
        except httpx.TimeoutException as exc:
            raise ToolError(ToolErrorKind.TIMEOUT, f"Tool '{tool_name}' timed out") from exc
        except httpx.HTTPError as exc:
            raise ToolError(ToolErrorKind.UPSTREAM, f"Tool service unreachable: {exc}") from exc

        if resp.status_code >= 400:
            kind = _STATUS_KINDS.get(resp.status_code, ToolErrorKind.UPSTREAM)
            raise ToolError(kind, _error_message(resp))

        try:
            body = resp.json()
        except ValueError as exc:
            raise ToolError(ToolErrorKind.UPSTREAM, "Tool service returned invalid JSON") from exc

        if not isinstance(body, dict) or "success" not in body:
            return body
        if body["success"]:
            return body.get("result")
        error = body.get("error") or {}
        try:
            kind = ToolErrorKind(error.get("kind", ToolErrorKind.UPSTREAM.value))
        except ValueError:
            kind = ToolErrorKind.UPSTREAM
        raise ToolError(kind, str(error.get("message") or f"Tool '{tool_name}' failed"))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ---------------------------------------------------------------------------
# In-process back-end
# ---------------------------------------------------------------------------
class LocalToolService(ToolService):
    """Runs tools registered with :func:`parley.tools.register_tool`."""

    def __init__(self, registry: Optional[Mapping[str, Any]] = None) -> None:
        self._registry = registry if registry is not None else TOOL_REGISTRY

    async def list_tools(self, agent_id: str, auth: AuthContext) -> List[ToolSpec]:
        return get_tool_specs(registry=self._registry)

    async def invoke(
        self, tool_name: str, args: Mapping[str, Any], auth: AuthContext, agent_id: str
    ) -> Any:
        tool_fn = self._registry.get(tool_name)
        if tool_fn is None:
            raise ToolError(ToolErrorKind.NOT_FOUND, f"Tool '{tool_name}' is not registered.")

        try:
            logger.debug("Executing tool '%s' with args=%s", tool_name, args)
            if inspect.iscoroutinefunction(tool_fn):
                return await tool_fn(**args)
            return await asyncio.to_thread(tool_fn, **args)
        except TypeError as exc:
            # Argument mismatch - give the caller a clean exception.
            logger.exception("Argument error while executing tool '%s'", tool_name)
            raise ToolError(
                ToolErrorKind.INVALID_ARGUMENTS, f"Invalid arguments for tool '{tool_name}': {exc}"
            ) from exc
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unhandled error in tool '%s'", tool_name)
            raise ToolError(
                ToolErrorKind.UPSTREAM, f"Tool '{tool_name}' raised an error: {exc}"
            ) from exc


def load_tool_service(backend: str | None = None) -> ToolService:
    """
    Factory for the configured tool back-end.

    Fallback order: *backend* arg, then ``settings.TOOL_BACKEND``.
    """
    target = (backend or settings.TOOL_BACKEND).lower()
    if target == "local":
        return LocalToolService()
    if target == "http":
        return HttpToolService(settings.TOOL_SERVICE_URL, timeout=settings.TOOL_TIMEOUT_SECONDS)
    raise ValueError(f"Tool backend '{target}' is not supported.")
