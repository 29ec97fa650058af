"""Land parcels router: intake, claims, listings and ownership history"""
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from datetime import datetime
from decimal import Decimal
import logging

from app.models.land import LandClassification, LandStatus, LandType, TransferType
from app.models.user import User
from app.routers.auth import get_current_user, get_current_admin, get_workflow
from app.services.workflow import WorkflowFacade

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/lands", tags=["Lands"])


# Request/Response Models
class RegisterLandRequest(BaseModel):
    """Admin intake of a parcel"""
    survey_number: str = Field(..., min_length=1, max_length=50)
    sub_division: Optional[str] = Field(None, max_length=50)
    village: str = Field(..., min_length=1, max_length=100)
    taluka: str = Field(..., min_length=1, max_length=100)
    district: str = Field(..., min_length=2, max_length=100)
    state: str = Field(..., min_length=2, max_length=100)
    pincode: str = Field(..., min_length=4, max_length=10)

    area_acres: Optional[float] = Field(None, ge=0)
    area_guntas: Optional[float] = Field(None, ge=0)
    area_sqft: Optional[float] = Field(None, ge=0)

    land_type: LandType
    classification: Optional[LandClassification] = None

    boundary_north: Optional[str] = None
    boundary_south: Optional[str] = None
    boundary_east: Optional[str] = None
    boundary_west: Optional[str] = None


class ListForSaleRequest(BaseModel):
    asking_price: Decimal = Field(..., gt=0)
    description: Optional[str] = Field(None, max_length=2000)


class LandResponse(BaseModel):
    id: int
    asset_id: str
    survey_number: str
    sub_division: Optional[str]
    village: str
    taluka: str
    district: str
    state: str
    pincode: str
    area_acres: Optional[float]
    area_guntas: Optional[float]
    area_sqft: Optional[float]
    land_type: LandType
    classification: Optional[LandClassification]
    current_owner_id: Optional[int]
    status: LandStatus
    for_sale: bool
    asking_price: Optional[Decimal]
    price_per_sqft: Optional[Decimal]
    listed_date: Optional[datetime]
    listing_description: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LandListResponse(BaseModel):
    """Paginated marketplace response"""
    items: List[LandResponse]
    total: int
    page: int
    page_size: int
    pages: int


class OwnershipRecordResponse(BaseModel):
    sequence: int
    owner_id: int
    from_date: datetime
    to_date: Optional[datetime]
    transfer_type: TransferType
    document_reference: Optional[str]

    model_config = ConfigDict(from_attributes=True)


# Endpoints
@router.post("", response_model=LandResponse, status_code=status.HTTP_201_CREATED)
async def register_land(
    request: RegisterLandRequest,
    admin: User = Depends(get_current_admin),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    """Register a new parcel (admin only)"""
    land = await workflow.register_land(admin.id, request.model_dump())
    return LandResponse.model_validate(land)


@router.get("/marketplace", response_model=LandListResponse)
async def marketplace(
    min_price: Optional[Decimal] = Query(None, ge=0),
    max_price: Optional[Decimal] = Query(None, ge=0),
    district: Optional[str] = None,
    land_type: Optional[LandType] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    """Browse parcels listed for sale"""
    lands, total = await workflow.marketplace(
        min_price=min_price,
        max_price=max_price,
        district=district,
        land_type=land_type,
        page=page,
        page_size=page_size,
    )
    return LandListResponse(
        items=[LandResponse.model_validate(land) for land in lands],
        total=total,
        page=page,
        page_size=page_size,
        pages=(total + page_size - 1) // page_size,
    )


@router.get("/mine", response_model=List[LandResponse])
async def my_lands(
    current_user: User = Depends(get_current_user),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    """Parcels held by the current user"""
    lands = await workflow.my_lands(current_user.id)
    return [LandResponse.model_validate(land) for land in lands]


@router.get("/asset/{asset_id}", response_model=LandResponse)
async def get_land_by_asset_id(
    asset_id: str,
    workflow: WorkflowFacade = Depends(get_workflow)
):
    """Look up a parcel by its public asset id"""
    land = await workflow.get_land_by_asset_id(asset_id)
    return LandResponse.model_validate(land)


@router.get("/{land_id}", response_model=LandResponse)
async def get_land(
    land_id: int,
    workflow: WorkflowFacade = Depends(get_workflow)
):
    land = await workflow.get_land(land_id)
    return LandResponse.model_validate(land)


@router.get("/{land_id}/history", response_model=List[OwnershipRecordResponse])
async def ownership_history(
    land_id: int,
    workflow: WorkflowFacade = Depends(get_workflow)
):
    """Ownership history, oldest tenure first"""
    records = await workflow.ownership_history(land_id)
    return [OwnershipRecordResponse.model_validate(record) for record in records]


@router.post("/{land_id}/claim", response_model=LandResponse)
async def claim_land(
    land_id: int,
    current_user: User = Depends(get_current_user),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    """Claim initial ownership of an unowned parcel (verified users only)"""
    land = await workflow.claim_land(land_id, current_user.id)
    return LandResponse.model_validate(land)


@router.post("/{land_id}/list-for-sale", response_model=LandResponse)
async def list_for_sale(
    land_id: int,
    request: ListForSaleRequest,
    current_user: User = Depends(get_current_user),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    land = await workflow.list_for_sale(land_id, current_user.id, request.asking_price, request.description)
    return LandResponse.model_validate(land)


@router.post("/{land_id}/unlist", response_model=LandResponse)
async def unlist(
    land_id: int,
    current_user: User = Depends(get_current_user),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    land = await workflow.unlist(land_id, current_user.id)
    return LandResponse.model_validate(land)


@router.post("/{land_id}/reconcile", response_model=LandResponse)
async def reconcile_land(
    land_id: int,
    admin: User = Depends(get_current_admin),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    """Release a parcel left reserved by a transaction that no longer exists"""
    land = await workflow.reconcile_parcel(land_id, admin.id)
    return LandResponse.model_validate(land)
