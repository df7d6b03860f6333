"""Smartsheet webhook receiver."""

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Request

from ...sync.portfolio import challenge_response
from ...service import WbsService
from ..dependencies import get_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/smartsheet")
async def smartsheet_webhook(
    request: Request,
    challenge: str | None = Query(None, alias="smartsheetHookChallenge"),
    service: WbsService = Depends(get_service),
) -> dict[str, Any]:
    """
    Answer verification challenges and dispatch portfolio row events.

    Smartsheet verifies a callback by sending a challenge (in the body or as
    a query parameter) and expects it echoed back as ``smartsheetHookResponse``.
    """
    raw = await request.body()
    try:
        payload = json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        logger.warning("Webhook body is not JSON; ignoring")
        payload = {}
    if not isinstance(payload, dict):
        payload = {}

    answer = challenge_response(payload, challenge)
    if answer is not None:
        logger.info("Answered webhook verification challenge")
        return answer

    result = await service.handle_webhook(payload)
    return result.to_dict()
