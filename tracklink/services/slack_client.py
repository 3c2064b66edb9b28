from __future__ import annotations

import logging
from typing import Any, cast

import httpx

LOGGER = logging.getLogger("tracklink.slack")

PERMISSION_ERRORS: frozenset[str] = frozenset({"not_in_channel", "restricted_action"})


class SlackApiError(RuntimeError):
    def __init__(self, message: str, *, error: str | None, status_code: int | None) -> None:
        super().__init__(message)
        self.error = error
        self.status_code = status_code

    @property
    def is_permission_error(self) -> bool:
        return self.error in PERMISSION_ERRORS


class SlackMessenger:
    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        bot_token: str | None,
        base_url: str = "https://slack.com/api",
        timeout_seconds: float = 3.0,
    ) -> None:
        self._http_client = http_client
        self._bot_token = bot_token
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = max(0.5, float(timeout_seconds))

    async def post_message(self, *, channel: str, thread_ts: str | None, text: str) -> str | None:
        payload: dict[str, object] = {"channel": channel, "text": text}
        if thread_ts:
            payload["thread_ts"] = thread_ts
        response = await self._call("chat.postMessage", payload)
        return _as_text(response.get("ts"))

    async def update_message(self, *, channel: str, ts: str, text: str) -> str | None:
        response = await self._call("chat.update", {"channel": channel, "ts": ts, "text": text})
        return _as_text(response.get("ts"))

    async def post_ephemeral(self, *, channel: str, user: str, text: str) -> None:
        await self._call("chat.postEphemeral", {"channel": channel, "user": user, "text": text})

    async def _call(self, method: str, payload: dict[str, object]) -> dict[str, Any]:
        if self._bot_token is None:
            raise SlackApiError(
                "Slack bot token is not configured.",
                error="not_authed",
                status_code=None,
            )
        try:
            response = await self._http_client.post(
                f"{self._base_url}/{method}",
                json=payload,
                headers={
                    "Authorization": f"Bearer {self._bot_token}",
                    "Content-Type": "application/json; charset=utf-8",
                },
                timeout=self._timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise SlackApiError(
                f"Slack {method} request failed: {exc}",
                error=None,
                status_code=None,
            ) from exc

        body = _decode_json_object(response)
        if response.status_code >= 400 or body.get("ok") is not True:
            error = _as_text(body.get("error")) or f"http_{response.status_code}"
            raise SlackApiError(
                f"Slack {method} failed: {error}",
                error=error,
                status_code=response.status_code,
            )
        warning = _as_text(body.get("warning"))
        if warning is not None:
            LOGGER.debug("slack %s warning=%s", method, warning)
        return body


def _decode_json_object(response: httpx.Response) -> dict[str, Any]:
    try:
        parsed = response.json()
    except ValueError:
        return {}
    if isinstance(parsed, dict):
        return cast(dict[str, Any], parsed)
    return {}


def _as_text(value: object) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        if stripped:
            return stripped
    return None
