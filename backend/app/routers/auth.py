"""Authentication dependencies and current-user endpoint"""
from fastapi import APIRouter, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, ConfigDict
from typing import Optional
from datetime import datetime
import logging

from app.database import get_db, async_session_maker
from app.services.auth import AuthService
from app.services.workflow import WorkflowFacade, build_workflow
from app.exceptions import AuthenticationError, UnauthorizedActor
from app.models.user import User, UserRole, VerificationStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])

bearer_scheme = HTTPBearer(auto_error=False)


class UserResponse(BaseModel):
    id: int
    email: str
    full_name: Optional[str]
    role: UserRole
    is_active: bool
    verification_status: VerificationStatus
    verification_date: Optional[datetime]
    rejection_reason: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Dependencies
async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db)
) -> User:
    """Get current authenticated user from the bearer token"""
    if credentials is None:
        raise AuthenticationError(message="Not authenticated")
    return await AuthService(db).authenticate_token(credentials.credentials)


def get_workflow(db: AsyncSession = Depends(get_db)) -> WorkflowFacade:
    """Workflow facade wired with the production collaborators"""
    return build_workflow(db, async_session_maker)


async def get_current_admin(
    current_user: User = Depends(get_current_user),
    workflow: WorkflowFacade = Depends(get_workflow),
) -> User:
    """Current user, required to be an administrator by the identity service"""
    if not await workflow.identity.is_admin(current_user.id):
        raise UnauthorizedActor(message="Administrator access required")
    return current_user


# Endpoints
@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    """Get current user info"""
    return UserResponse.model_validate(current_user)
