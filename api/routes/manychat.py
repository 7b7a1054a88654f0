"""ManyChat External Request webhook."""

import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Header, HTTPException

from api.models.manychat_webhook import ManyChatCommand
from booking.services.chat_command_service import handle_chat_command

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/integrations/manychat", tags=["webhooks"])


@router.post("/webhook")
async def receive_manychat_webhook(
    command: ManyChatCommand,
    x_tenant_id: Annotated[str | None, Header()] = None,
) -> dict:
    """
    Execute a chat action for the tenant named by the x-tenant-id header
    (or the tenantId body field).

    Raises:
        HTTPException: 400 if the tenant id is missing or malformed
    """
    raw_tenant_id = x_tenant_id or command.tenantId
    if not raw_tenant_id:
        raise HTTPException(status_code=400, detail="Tenant ID required")

    try:
        tenant_id = UUID(raw_tenant_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid tenant ID")

    return await handle_chat_command(tenant_id, command.arguments())
