from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ConversationMessage(BaseModel):
    role: str = Field(..., description="user or assistant")
    content: str
    timestamp: Optional[datetime] = None


class ConversationContext(BaseModel):
    """Per (user, restaurant) memory carried between turns."""

    model_config = ConfigDict(populate_by_name=True)

    last_table_number: Optional[str] = Field(default=None, alias="lastTableNumber")
    last_customer_name: Optional[str] = Field(default=None, alias="lastCustomerName")
    last_customer_phone: Optional[str] = Field(default=None, alias="lastCustomerPhone")
    preferences: Dict[str, Any] = Field(default_factory=dict)
    messages: List[ConversationMessage] = Field(default_factory=list)
