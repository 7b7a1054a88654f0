"""Pydantic model for ManyChat External Request payloads."""

from typing import Any

from pydantic import BaseModel, ConfigDict


class ManyChatCommand(BaseModel):
    """
    ManyChat action payload.

    Only `action` is structural; the remaining keys are action arguments
    (date, serviceId, email, subscriber_id, ...) passed through untouched.
    """

    model_config = ConfigDict(extra="allow")

    action: str | None = None
    tenantId: str | None = None

    def arguments(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)
