"""CLI client for the Parley API."""

from __future__ import annotations

import logging
import time
import uuid
from typing import (
    Any,
    Dict,
    List,
    Tuple,
    cast,
)

import httpx

from parley.common import (
    AnsiColors,
    colored_print,
)
from parley.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# CLI Client
# ---------------------------------------------------------------------------
def get_user_message() -> Tuple[str, bool]:
    """
    Get a message from the user via standard input.

    Returns:
        Tuple of (user_input, success_flag)
        The success_flag is False if input couldn't be read (e.g., Ctrl+C)
    """
    import signal  # pylint: disable=import-outside-toplevel

    # Ensure SIGINT breaks out of slow system calls such as read()
    signal.siginterrupt(signal.SIGINT, True)

    try:
        user_input = input().strip()
        return user_input, True
    except (EOFError, KeyboardInterrupt):
        return "", False


def _error_detail(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        try:
            data = exc.response.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and "detail" in data:
            return f"API error: {data['detail']}"
    return f"Error connecting to API: {exc}"


def call_api(
    endpoint: str,
    data: Dict[str, Any],
    headers: Dict[str, str] | None = None,
    max_retries: int = 5,
    base_url: str | None = None,
) -> Dict[str, Any]:
    """Make a POST request to the API and return the response with retries."""
    api_url = f"{base_url or f'http://localhost:{settings.API_PORT}'}{endpoint}"

    for attempt in range(max_retries):
        try:
            with httpx.Client(timeout=settings.MODEL_TIMEOUT_SECONDS * 4) as client:
                response = client.post(api_url, json=data, headers=headers)
                response.raise_for_status()
                return cast(Dict[str, Any], response.json())
        except httpx.HTTPError as e:
            # On connection refused, retry with exponential backoff
            if isinstance(e, httpx.ConnectError) and attempt < max_retries - 1:
                retry_delay = 0.5 * (2**attempt)  # exponential backoff: 0.5s, 1s, 2s, 4s...
                logger.info(
                    "API not ready yet, retrying in %.1f seconds (attempt %d/%d)...",
                    retry_delay,
                    attempt + 1,
                    max_retries,
                )
                time.sleep(retry_delay)
                continue

            logger.error("API request error: %s", str(e))
            error_msg = _error_detail(e)
            colored_print(error_msg, AnsiColors.RED)
            return {"reply_text": error_msg, "error": True}

    error_msg = f"Failed to connect to API after {max_retries} attempts"
    colored_print(error_msg, AnsiColors.RED)
    return {"reply_text": error_msg, "error": True}


def print_ledger(ledger: List[Dict[str, Any]]) -> None:
    """Show one line per recorded model call."""
    for idx, entry in enumerate(ledger, start=1):
        colored_print(
            f"  {idx}. [{entry.get('stage')}] {entry.get('description')} "
            f"({entry.get('duration_ms', 0):.0f} ms)",
            AnsiColors.BLUE,
        )


def run_cli(agent_id: str = "default", show_ledger: bool = False) -> None:
    """Run the CLI client that communicates with the API."""
    conversation_id = str(uuid.uuid4())
    history: List[Dict[str, str]] = []

    colored_print("\nParley shell - type 'exit' or 'quit' (or Ctrl+C) to exit", AnsiColors.GREEN)
    while True:
        colored_print("\nYou: ", AnsiColors.BLUE, end="")
        user_msg, ok = get_user_message()
        if not ok:
            break  # Exit if user input couldn't be retrieved (e.g., Ctrl+C)
        if user_msg.lower() in {"exit", "quit"}:
            break
        if not user_msg:
            continue

        response = call_api(
            "/chat",
            {
                "conversation_id": conversation_id,
                "agent_id": agent_id,
                "user_message": user_msg,
                "recent_history": history[-settings.HISTORY_WINDOW :],
            },
        )
        reply = response.get("reply_text", "No response from API")

        if show_ledger and response.get("debug_ledger"):
            print_ledger(response["debug_ledger"])
        colored_print(reply, AnsiColors.YELLOW)

        if not response.get("error"):
            history.append({"role": "user", "content": user_msg})
            history.append({"role": "assistant", "content": reply})


if __name__ == "__main__":
    run_cli()
