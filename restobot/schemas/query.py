from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from restobot.schemas.operation import OperationDescriptor


class QueryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    utterance: str = Field(..., min_length=1, description="Free-form staff request")
    restaurant_id: str = Field(..., alias="restaurantId", description="Tenant identifier")
    user_id: str = Field(..., alias="userId", description="Calling staff member")


class QueryResponse(BaseModel):
    success: bool
    response: str
    data: Optional[Dict[str, Any]] = None


class OperationsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    restaurant_id: str = Field(..., alias="restaurantId")
    user_id: str = Field(..., alias="userId")
    operations: List[OperationDescriptor] = Field(..., min_length=1)


class OperationsResponse(BaseModel):
    success: bool
    results: Dict[str, Any]


class PermissionsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    restaurant_id: str = Field(..., alias="restaurantId")
    role: str
    permissions: List[str]
    can_read: bool = Field(..., alias="canRead")
    can_write: bool = Field(..., alias="canWrite")
    can_delete: bool = Field(..., alias="canDelete")
    can_admin: bool = Field(..., alias="canAdmin")
