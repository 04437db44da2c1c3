from __future__ import annotations

"""Messaging-channel bridge (WhatsApp Business webhook).

Inbound text from a channel address is routed to the assistant linked to that
address and answered through the regular turn pipeline.
"""

from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, List, Optional, Protocol, cast
import logging
import os

import requests

from ..config import env_int
from ..domain.errors import NotFound, ProviderError
from ..domain.models import ChatReply, ChatTurnRequest
from ..infrastructure.assistant_repository import AssistantRepository, get_assistant_repo
from .turn_orchestrator import TurnOrchestrator, get_turn_orchestrator

logger = logging.getLogger(__name__)

CHANNEL_FAILURE_REPLY = "Sorry, I'm having trouble processing your request right now."
GRAPH_API_BASE = "https://graph.facebook.com"
MAX_TRACKED_ADDRESSES_ENV = "ASSISTANT_HUB_CHANNEL_MAX_TRACKED_ADDRESSES"
DEFAULT_MAX_TRACKED_ADDRESSES = 1000


@dataclass(frozen=True)
class InboundMessage:
    address: str
    text: str


class ChannelSender(Protocol):
    def send_message(self, address: str, text: str) -> bool: ...


def parse_webhook_payload(body: Dict[str, Any]) -> List[InboundMessage]:
    """Collect text messages from a WhatsApp Business webhook body."""
    if not isinstance(body, dict) or body.get("object") != "whatsapp_business_account":
        return []
    out: List[InboundMessage] = []
    for entry in body.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            for message in value.get("messages") or []:
                sender = str(message.get("from") or "").strip()
                text = ((message.get("text") or {}).get("body") or "").strip()
                if sender and text:
                    out.append(InboundMessage(address=sender, text=text))
    return out


class WhatsAppCloudSender:
    def __init__(
        self,
        access_token: Optional[str],
        phone_number_id: Optional[str],
        api_version: str = "v21.0",
        timeout: tuple[float, float] = (3, 15),
    ) -> None:
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.api_version = api_version
        self._timeout = timeout
        self._session = requests.Session()

    @classmethod
    def from_env(cls) -> "WhatsAppCloudSender":
        return cls(
            access_token=os.getenv("WHATSAPP_ACCESS_TOKEN"),
            phone_number_id=os.getenv("WHATSAPP_PHONE_NUMBER_ID"),
            api_version=os.getenv("WHATSAPP_API_VERSION", "v21.0"),
        )

    @property
    def configured(self) -> bool:
        return bool(self.access_token and self.phone_number_id)

    def send_message(self, address: str, text: str) -> bool:
        if not self.configured:
            logger.warning("channel sender not configured; dropping reply to %s", address)
            return False
        try:
            resp = self._session.post(
                f"{GRAPH_API_BASE}/{self.api_version}/{self.phone_number_id}/messages",
                headers={"Authorization": f"Bearer {self.access_token}"},
                json={
                    "messaging_product": "whatsapp",
                    "to": address,
                    "type": "text",
                    "text": {"body": text},
                },
                timeout=self._timeout,
            )
            resp.raise_for_status()
        except requests.exceptions.RequestException as exc:
            logger.error("channel_send_failed", extra={"address": address, "err": str(exc)})
            return False
        return True


class ChannelBridge:
    """Answers inbound channel messages through the turn pipeline.

    With conversation reuse on, the most recent conversation per address is
    remembered in process memory only, bounded to the most recently active
    addresses. After a restart each address starts a fresh conversation.
    """

    def __init__(
        self,
        orchestrator: TurnOrchestrator,
        sender: ChannelSender,
        assistants: Optional[AssistantRepository] = None,
        reuse_conversation: Optional[bool] = None,
        max_tracked_addresses: Optional[int] = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._sender = sender
        self._assistants = assistants or get_assistant_repo()
        if reuse_conversation is None:
            reuse_conversation = orchestrator.settings.reuse_channel_conversation
        self._reuse = reuse_conversation
        if max_tracked_addresses is None:
            max_tracked_addresses = env_int(MAX_TRACKED_ADDRESSES_ENV, DEFAULT_MAX_TRACKED_ADDRESSES)
        self._max_tracked = max(1, max_tracked_addresses)
        self._by_address: "OrderedDict[str, str]" = OrderedDict()
        self._guard = Lock()

    def handle_inbound(self, message: InboundMessage) -> Optional[str]:
        assistant = self._assistants.find_by_channel_address(message.address)
        if assistant is None:
            logger.error("No assistant linked to channel address %s", message.address)
            return None

        known = None
        if self._reuse:
            with self._guard:
                known = self._by_address.get(message.address)
        try:
            result = self._run(known, assistant.assistant_id, message.text)
        except ProviderError as exc:
            logger.warning("channel turn failed for %s: %s", message.address, exc.message)
            reply = CHANNEL_FAILURE_REPLY
            # The user message is already stored in that conversation.
            self._remember(message.address, exc.details.get("conversationId"))
        else:
            reply = result.reply
            self._remember(message.address, result.conversation_id)
        self._sender.send_message(message.address, reply)
        return reply

    def _remember(self, address: str, conversation_id: Optional[str]) -> None:
        if not self._reuse or not conversation_id:
            return
        with self._guard:
            self._by_address[address] = conversation_id
            self._by_address.move_to_end(address)
            while len(self._by_address) > self._max_tracked:
                evicted, _ = self._by_address.popitem(last=False)
                logger.debug("channel address %s no longer tracked", evicted)

    def _run(self, conversation_id: Optional[str], assistant_id: str, text: str) -> ChatReply:
        if conversation_id:
            try:
                result = self._orchestrator.take_turn(ChatTurnRequest(conversation_id=conversation_id, message=text))
                return cast(ChatReply, result)
            except NotFound:
                logger.info("channel conversation %s vanished; starting a new one", conversation_id)
        # A text turn always yields a reply, never a snapshot.
        result = self._orchestrator.take_turn(ChatTurnRequest(assistant_id=assistant_id, message=text))
        return cast(ChatReply, result)


_bridge: ChannelBridge | None = None


def get_channel_bridge() -> ChannelBridge:
    global _bridge
    if _bridge is not None:
        return _bridge
    _bridge = ChannelBridge(
        orchestrator=get_turn_orchestrator(),
        sender=WhatsAppCloudSender.from_env(),
        assistants=get_assistant_repo(),
    )
    return _bridge
