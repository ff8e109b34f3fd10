from __future__ import annotations

import base64
import logging
from typing import Any, Mapping, Optional

import httpx

from whatsfordinner.workflow.errors import CollaboratorError, InvalidInputError

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 10 * 1024 * 1024


def is_image_file(file: Mapping[str, Any]) -> bool:
    return str(file.get("mimetype") or "").startswith("image/")


class SlackFileFetcher:
    """Download private Slack files and hand them to the LLM as data URLs."""

    def __init__(
        self,
        bot_token: str,
        *,
        timeout_s: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._bot_token = bot_token
        self._timeout_s = timeout_s
        self._client = client

    async def fetch_data_url(self, file: Mapping[str, Any]) -> str:
        url = file.get("url_private_download") or file.get("url_private")
        if not url:
            raise InvalidInputError("shared file has no download URL")
        mimetype = str(file.get("mimetype") or "image/jpeg")
        headers = {"Authorization": f"Bearer {self._bot_token}"}
        try:
            if self._client is not None:
                resp = await self._client.get(url, headers=headers, timeout=self._timeout_s)
            else:
                async with httpx.AsyncClient(
                    timeout=self._timeout_s, follow_redirects=True
                ) as client:
                    resp = await client.get(url, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise CollaboratorError("slack_file_download", exc) from exc
        content = resp.content
        if len(content) > MAX_IMAGE_BYTES:
            raise InvalidInputError("image is too large (max 10 MB)")
        logger.debug("Downloaded %s (%d bytes)", file.get("id"), len(content))
        encoded = base64.b64encode(content).decode("ascii")
        return f"data:{mimetype};base64,{encoded}"


__all__ = ["SlackFileFetcher", "is_image_file"]
