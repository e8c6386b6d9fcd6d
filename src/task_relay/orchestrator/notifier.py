"""Best-effort onward delivery of results to the chat surface."""

from __future__ import annotations

import logging
from typing import Any

from task_relay.http.client import JsonHttpClient
from task_relay.orchestrator.models import Deliverable

logger = logging.getLogger(__name__)


class ChatNotifier:
    """POSTs a completed result to the chat callback when a conversation is known."""

    def __init__(self, *, callback_url: str, client: JsonHttpClient) -> None:
        self.callback_url = callback_url
        self.client = client

    def notify(  # noqa: PLR0913
        self,
        *,
        conversation_id: str,
        task_id: str | None,
        user_id: str | None,
        agent: str,
        result: Any,
        deliverable: Deliverable | None,
        error: str | None = None,
    ) -> bool:
        payload: dict[str, Any] = {
            "conversation_id": conversation_id,
            "task_id": task_id,
            "user_id": user_id,
            "agent": agent,
            "result": result,
            "error": error,
            "deliverable": deliverable.to_metadata() if deliverable is not None else None,
        }
        response = self.client.post_json(self.callback_url, payload)
        if not response.is_success:
            logger.warning(
                "Chat callback failed for conversation %s: %s",
                conversation_id,
                response.error,
            )
            return False
        logger.info("Chat callback delivered: conversation=%s task=%s", conversation_id, task_id)
        return True
