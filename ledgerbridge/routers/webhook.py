"""
Xendit webhook router - receives invoice callbacks.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from ledgerbridge.connectors.webhook_handler import XenditWebhookHandler
from ledgerbridge.dependencies import get_webhook_handler
from ledgerbridge.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


@router.post("/webhook")
async def receive_webhook(
    request: Request,
    x_callback_token: Optional[str] = Header(default=None),
    handler: XenditWebhookHandler = Depends(get_webhook_handler),
):
    """
    Xendit invoice callback.

    Verifies X-Callback-Token, then syncs PAID/SETTLED invoices to Kledo.
    Sync failures are acknowledged with 200 and ``success: false``.
    """
    raw_body = await request.body()
    result = await handler.handle(raw_body, x_callback_token)
    return JSONResponse(status_code=result.status_code, content=result.body)
