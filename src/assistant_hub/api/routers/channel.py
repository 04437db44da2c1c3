from __future__ import annotations

from typing import Any, Dict, Optional
import logging
import os

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from fastapi.responses import PlainTextResponse

from ...services.channel_bridge import ChannelBridge, get_channel_bridge, parse_webhook_payload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/channel", tags=["channel"])


@router.get("/webhook", response_class=PlainTextResponse)
def verify_webhook(
    mode: Optional[str] = Query(None, alias="hub.mode"),
    token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge"),
) -> str:
    expected = os.getenv("WHATSAPP_VERIFY_TOKEN")
    if mode == "subscribe" and expected and token == expected:
        logger.info("channel webhook verified")
        return challenge or ""
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Webhook verification failed")


@router.post("/webhook")
def receive_webhook(
    body: Dict[str, Any] = Body(...),
    bridge: ChannelBridge = Depends(get_channel_bridge),
) -> Dict[str, str]:
    if body.get("object") != "whatsapp_business_account":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unsupported webhook object")
    for inbound in parse_webhook_payload(body):
        logger.info("channel message received from %s", inbound.address)
        bridge.handle_inbound(inbound)
    return {"status": "ok"}
