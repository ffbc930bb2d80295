"""Canned acknowledgement actor."""

from __future__ import annotations

from pydantic import ValidationError

from ccrelay.actors.base import BaseActor
from ccrelay.types import AUTO_RESPONDER, AUTO_RESPONSE, AssistantReplyPayload, BusMessage, ChatPayload

DEFAULT_TEMPLATE = "📝 Noted: {text}"


class AutoResponderActor(BaseActor):
    name = AUTO_RESPONDER

    def __init__(self, name: str | None = None, *, template: str = DEFAULT_TEMPLATE) -> None:
        super().__init__(name)
        self.template = template

    async def handle_message(self, message: BusMessage) -> BusMessage | None:
        try:
            payload = ChatPayload.of(message)
        except ValidationError:
            return self.error(message, "Invalid chat payload")
        if not payload.text:
            return self.error(message, "No text provided")
        text = self.template.replace("{text}", payload.text)
        return self.reply(message, AUTO_RESPONSE, AssistantReplyPayload(text=text).to_wire())
