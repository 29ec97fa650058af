"""Users router: identity verification decisions (admin)"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import Optional
import logging

from app.models.user import User
from app.routers.auth import UserResponse, get_current_admin, get_workflow
from app.services.workflow import WorkflowFacade

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["Users"])


class VerifyUserRequest(BaseModel):
    approve: bool
    rejection_reason: Optional[str] = Field(None, max_length=1000)


@router.post("/{user_id}/verify", response_model=UserResponse)
async def verify_user(
    user_id: int,
    request: VerifyUserRequest,
    admin: User = Depends(get_current_admin),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    """Approve or reject a user's identity verification"""
    user = await workflow.verify_user(admin.id, user_id, request.approve, request.rejection_reason)
    return UserResponse.model_validate(user)
