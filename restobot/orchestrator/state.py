from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

from restobot.orchestrator.intents import Intent
from restobot.schemas.context import ConversationContext
from restobot.schemas.operation import OperationDescriptor
from restobot.services.access import AccessGrant


@dataclass
class PipelineState:
    utterance: str = ""
    restaurant_id: str = ""
    user_id: str = ""
    intent: Intent = Intent.UNKNOWN
    grant: Optional[AccessGrant] = None
    context: Optional[ConversationContext] = None
    operations: List[OperationDescriptor] = field(default_factory=list)
    tier: Optional[str] = None
    result: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    response: str = ""
    success: bool = False
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error_code is not None

    def as_payload(self) -> Dict[str, Any]:
        """Shallow field mapping; nested models and the grant stay as objects."""
        return {item.name: getattr(self, item.name) for item in fields(self)}
