"""Land registry store: parcels, ownership history and holdings.

Each write is a single statement committed on its own. The racing writes
(reserving a parcel for a deal, handing it to the buyer, closing a tenure)
are conditional updates whose row count tells the caller whether the
precondition still held when the write landed.
"""
import logging
import random
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import ConflictError, NotFoundError, UnauthorizedActor, ValidationError
from app.models.land import Land, LandStatus, LandType, OwnershipRecord, TransferType
from app.models.user import LandHolding
from app.services.state_machine import to_amount

logger = logging.getLogger(__name__)

SQFT_PER_ACRE = 43560
SQFT_PER_GUNTA = 1089

REQUIRED_LAND_FIELDS = ("survey_number", "village", "taluka", "district", "state", "pincode", "land_type")
OPTIONAL_LAND_FIELDS = (
    "sub_division", "area_acres", "area_guntas", "area_sqft", "classification",
    "boundary_north", "boundary_south", "boundary_east", "boundary_west",
)

LISTABLE_STATUSES = (LandStatus.AVAILABLE, LandStatus.FOR_SALE)


def generate_asset_id(state: str, district: str) -> str:
    """State code + district code + 6 time digits + 3 random digits"""
    state_code = state[:2].upper()
    district_code = district[:3].upper()
    timestamp = str(int(time.time() * 1000))[-6:]
    return f"{state_code}{district_code}{timestamp}{random.randint(0, 999):03d}"


def total_area_sqft(land: Land) -> float:
    return (
        (land.area_acres or 0) * SQFT_PER_ACRE
        + (land.area_guntas or 0) * SQFT_PER_GUNTA
        + (land.area_sqft or 0)
    )


class LandRegistryStore:
    """Parcels and their ownership state"""

    def __init__(self, db: AsyncSession):
        self.db = db

    # Queries

    async def get_land(self, land_id: int) -> Land:
        result = await self.db.execute(
            select(Land).where(Land.id == land_id).execution_options(populate_existing=True)
        )
        land = result.scalar_one_or_none()
        if not land:
            raise NotFoundError(message="Land not found", details={"land_id": land_id})
        return land

    async def get_by_asset_id(self, asset_id: str) -> Land:
        result = await self.db.execute(select(Land).where(Land.asset_id == asset_id.strip().upper()))
        land = result.scalar_one_or_none()
        if not land:
            raise NotFoundError(message="Land not found", details={"asset_id": asset_id})
        return land

    async def marketplace(
        self,
        min_price: Optional[Decimal] = None,
        max_price: Optional[Decimal] = None,
        district: Optional[str] = None,
        land_type: Optional[LandType] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Land], int]:
        """Parcels currently listed for sale, newest listing first"""
        query = select(Land).where(Land.for_sale.is_(True), Land.status == LandStatus.FOR_SALE)

        if min_price is not None:
            query = query.where(Land.asking_price >= min_price)
        if max_price is not None:
            query = query.where(Land.asking_price <= max_price)
        if district:
            query = query.where(func.lower(Land.district) == district.lower())
        if land_type:
            query = query.where(Land.land_type == land_type)

        total = (await self.db.execute(select(func.count()).select_from(query.subquery()))).scalar_one()

        query = query.order_by(Land.listed_date.desc()).offset((page - 1) * page_size).limit(page_size)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def ownership_history(self, land_id: int) -> List[OwnershipRecord]:
        result = await self.db.execute(
            select(OwnershipRecord)
            .where(OwnershipRecord.land_id == land_id)
            .order_by(OwnershipRecord.sequence)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def open_tenure(self, land_id: int) -> Optional[OwnershipRecord]:
        result = await self.db.execute(
            select(OwnershipRecord)
            .where(OwnershipRecord.land_id == land_id, OwnershipRecord.to_date.is_(None))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def tenure_for_reference(self, land_id: int, document_reference: str) -> Optional[OwnershipRecord]:
        result = await self.db.execute(
            select(OwnershipRecord).where(
                OwnershipRecord.land_id == land_id,
                OwnershipRecord.document_reference == document_reference,
            )
        )
        return result.scalars().first()

    async def holdings_of(self, user_id: int) -> List[Land]:
        result = await self.db.execute(
            select(Land)
            .join(LandHolding, LandHolding.land_id == Land.id)
            .where(LandHolding.user_id == user_id)
            .order_by(LandHolding.acquired_at)
        )
        return list(result.scalars().all())

    async def holds(self, user_id: int, land_id: int) -> bool:
        result = await self.db.execute(
            select(LandHolding.id).where(LandHolding.user_id == user_id, LandHolding.land_id == land_id)
        )
        return result.scalar_one_or_none() is not None

    # Intake and listing

    async def register_land(self, admin_id: int, attributes: Dict[str, Any]) -> Land:
        """Admin intake of a new, unowned parcel"""
        missing = [name for name in REQUIRED_LAND_FIELDS if not attributes.get(name)]
        if missing:
            raise ValidationError(message="Missing required land fields", details={"missing": missing})

        fields = {
            name: attributes[name]
            for name in REQUIRED_LAND_FIELDS + OPTIONAL_LAND_FIELDS
            if attributes.get(name) is not None
        }

        # Asset ids are random in their last digits; retry the rare collision
        for attempt in range(3):
            land = Land(
                asset_id=generate_asset_id(fields["state"], fields["district"]),
                status=LandStatus.AVAILABLE,
                for_sale=False,
                added_by=admin_id,
                **fields,
            )
            self.db.add(land)
            try:
                await self.db.commit()
                break
            except IntegrityError:
                await self.db.rollback()
                if attempt == 2:
                    raise
                logger.warning("Asset id collision during land registration, retrying")

        await self.db.refresh(land)
        logger.info(f"Land {land.asset_id} registered by admin {admin_id}")
        return land

    async def claim_initial_ownership(self, land_id: int, user_id: int, now: Optional[datetime] = None) -> Land:
        """First owner of an unowned parcel"""
        now = now or datetime.utcnow()
        land = await self.get_land(land_id)
        if land.current_owner_id is not None:
            raise ConflictError(message="Land already has an owner", details={"land_id": land_id})

        # The open-tenure index admits one claimant; the loser gets a conflict here
        try:
            await self.append_tenure(land_id, user_id, TransferType.INITIAL, "DIGITAL_CLAIM", now)
        except ConflictError:
            raise ConflictError(message="Land already has an owner", details={"land_id": land_id})

        result = await self.db.execute(
            update(Land)
            .where(Land.id == land_id, Land.current_owner_id.is_(None))
            .values(current_owner_id=user_id)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            raise ConflictError(message="Land already has an owner", details={"land_id": land_id})

        await self.add_holding(user_id, land_id)
        logger.info(f"Land {land.asset_id} claimed by user {user_id}")
        return await self.get_land(land_id)

    async def list_for_sale(self, land_id: int, owner_id: int, asking_price,
                            description: Optional[str] = None) -> Land:
        land = await self.get_land(land_id)
        if land.current_owner_id != owner_id:
            raise UnauthorizedActor(message="Only the owner can list this land for sale")

        asking_price = to_amount(asking_price)
        area = total_area_sqft(land)
        price_per_sqft = (asking_price / Decimal(str(area))).quantize(Decimal("0.01")) if area > 0 else None

        result = await self.db.execute(
            update(Land)
            .where(
                Land.id == land_id,
                Land.current_owner_id == owner_id,
                Land.status.in_(LISTABLE_STATUSES),
                Land.active_transaction_code.is_(None),
            )
            .values(
                status=LandStatus.FOR_SALE,
                for_sale=True,
                asking_price=asking_price,
                price_per_sqft=price_per_sqft,
                listed_date=datetime.utcnow(),
                listing_description=description or "",
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            raise ConflictError(
                message=f"Land in status {land.status.value} cannot be listed for sale",
                details={"land_id": land_id, "status": land.status.value},
            )

        logger.info(f"Land {land.asset_id} listed for sale at {asking_price}")
        return await self.get_land(land_id)

    async def unlist(self, land_id: int, owner_id: int) -> Land:
        land = await self.get_land(land_id)
        if land.current_owner_id != owner_id:
            raise UnauthorizedActor(message="Only the owner can withdraw this listing")

        result = await self.db.execute(
            update(Land)
            .where(
                Land.id == land_id,
                Land.current_owner_id == owner_id,
                Land.status.in_(LISTABLE_STATUSES),
                Land.active_transaction_code.is_(None),
            )
            .values(status=LandStatus.AVAILABLE, for_sale=False)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            raise ConflictError(
                message=f"Land in status {land.status.value} cannot be withdrawn from sale",
                details={"land_id": land_id, "status": land.status.value},
            )

        logger.info(f"Land {land.asset_id} withdrawn from sale")
        return await self.get_land(land_id)

    # Transaction reservation

    async def reserve_for_transaction(self, land_id: int, transaction_code: str) -> bool:
        """FOR_SALE with no live deal -> UNDER_TRANSACTION held by ``transaction_code``"""
        result = await self.db.execute(
            update(Land)
            .where(
                Land.id == land_id,
                Land.status == LandStatus.FOR_SALE,
                Land.active_transaction_code.is_(None),
            )
            .values(
                status=LandStatus.UNDER_TRANSACTION,
                active_transaction_code=transaction_code,
                reserved_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        reserved = result.rowcount == 1
        if reserved:
            logger.info(f"Land {land_id} reserved for transaction {transaction_code}")
        return reserved

    async def release_from_transaction(self, land_id: int, transaction_code: str) -> bool:
        """Back to FOR_SALE, only if ``transaction_code`` still holds the parcel"""
        result = await self.db.execute(
            update(Land)
            .where(Land.id == land_id, Land.active_transaction_code == transaction_code)
            .values(status=LandStatus.FOR_SALE, for_sale=True, active_transaction_code=None, reserved_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        released = result.rowcount == 1
        if released:
            logger.info(f"Land {land_id} released from transaction {transaction_code}")
        return released

    # Transfer building blocks; each is safe to repeat

    async def close_open_tenure(self, land_id: int, owner_id: int, now: datetime) -> bool:
        result = await self.db.execute(
            update(OwnershipRecord)
            .where(
                OwnershipRecord.land_id == land_id,
                OwnershipRecord.owner_id == owner_id,
                OwnershipRecord.to_date.is_(None),
            )
            .values(to_date=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def append_tenure(self, land_id: int, owner_id: int, transfer_type: TransferType,
                            document_reference: Optional[str], now: datetime) -> OwnershipRecord:
        """Open a new tenure; returns the existing one if this exact tenure already landed"""
        existing = await self.open_tenure(land_id)
        if existing is not None:
            if existing.owner_id == owner_id and existing.document_reference == document_reference:
                return existing
            raise ConflictError(
                message="Land already has an open ownership record",
                details={"land_id": land_id, "owner_id": existing.owner_id},
            )

        max_sequence = (await self.db.execute(
            select(func.max(OwnershipRecord.sequence)).where(OwnershipRecord.land_id == land_id)
        )).scalar()

        record = OwnershipRecord(
            land_id=land_id,
            sequence=(max_sequence or 0) + 1,
            owner_id=owner_id,
            from_date=now,
            transfer_type=transfer_type,
            document_reference=document_reference,
        )
        self.db.add(record)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self.open_tenure(land_id)
            if existing is not None and existing.owner_id == owner_id \
                    and existing.document_reference == document_reference:
                return existing
            raise ConflictError(
                message="Ownership history changed concurrently",
                details={"land_id": land_id},
            )

        await self.db.refresh(record)
        return record

    async def assign_owner(self, land_id: int, new_owner_id: int, transaction_code: str) -> bool:
        """Hand the parcel to ``new_owner_id``; guarded by the transaction's hold on it"""
        result = await self.db.execute(
            update(Land)
            .where(Land.id == land_id, Land.active_transaction_code == transaction_code)
            .values(
                current_owner_id=new_owner_id,
                status=LandStatus.AVAILABLE,
                for_sale=False,
                asking_price=None,
                price_per_sqft=None,
                listed_date=None,
                active_transaction_code=None,
                reserved_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def add_holding(self, user_id: int, land_id: int) -> bool:
        if await self.holds(user_id, land_id):
            return False
        self.db.add(LandHolding(user_id=user_id, land_id=land_id))
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            return False
        return True

    async def remove_holding(self, user_id: int, land_id: int) -> bool:
        result = await self.db.execute(
            delete(LandHolding).where(LandHolding.user_id == user_id, LandHolding.land_id == land_id)
        )
        await self.db.commit()
        return result.rowcount > 0
