"""Land parcel and ownership history models"""
from sqlalchemy import (
    Column, Integer, String, DateTime, Text, Float, Boolean, ForeignKey, Enum, Numeric,
    Index, UniqueConstraint, text,
)
from datetime import datetime
from app.database import Base
import enum


class LandStatus(str, enum.Enum):
    """Ownership/sale state of a parcel"""
    AVAILABLE = "AVAILABLE"
    FOR_SALE = "FOR_SALE"
    UNDER_TRANSACTION = "UNDER_TRANSACTION"
    SOLD = "SOLD"
    DISPUTED = "DISPUTED"


class LandType(str, enum.Enum):
    AGRICULTURAL = "AGRICULTURAL"
    RESIDENTIAL = "RESIDENTIAL"
    COMMERCIAL = "COMMERCIAL"
    INDUSTRIAL = "INDUSTRIAL"
    GOVERNMENT = "GOVERNMENT"


class LandClassification(str, enum.Enum):
    DRY = "DRY"
    WET = "WET"
    GARDEN = "GARDEN"
    INAM = "INAM"
    SARKAR = "SARKAR"


class TransferType(str, enum.Enum):
    """How a tenure in the ownership history began"""
    INITIAL = "INITIAL"
    SALE = "SALE"
    TRANSFER = "TRANSFER"
    INHERITANCE = "INHERITANCE"
    GIFT = "GIFT"


class Land(Base):
    """A registered land parcel with at most one current owner"""
    __tablename__ = "lands"

    id = Column(Integer, primary_key=True, index=True)

    # Generated once at intake, never changes
    asset_id = Column(String(20), unique=True, nullable=False, index=True)

    # Survey information
    survey_number = Column(String(50), nullable=False)
    sub_division = Column(String(50), nullable=True)
    village = Column(String(100), nullable=False)
    taluka = Column(String(100), nullable=False)
    district = Column(String(100), nullable=False, index=True)
    state = Column(String(100), nullable=False)
    pincode = Column(String(10), nullable=False)

    # Area and boundaries
    area_acres = Column(Float, nullable=True)
    area_guntas = Column(Float, nullable=True)
    area_sqft = Column(Float, nullable=True)
    boundary_north = Column(String(255), nullable=True)
    boundary_south = Column(String(255), nullable=True)
    boundary_east = Column(String(255), nullable=True)
    boundary_west = Column(String(255), nullable=True)

    land_type = Column(Enum(LandType), nullable=False)
    classification = Column(Enum(LandClassification), nullable=True)

    # Ownership
    current_owner_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    # Sale state
    status = Column(Enum(LandStatus), default=LandStatus.AVAILABLE, nullable=False, index=True)
    for_sale = Column(Boolean, default=False, nullable=False, index=True)
    asking_price = Column(Numeric(15, 2), nullable=True)
    price_per_sqft = Column(Numeric(15, 2), nullable=True)
    listed_date = Column(DateTime, nullable=True)
    listing_description = Column(Text, nullable=True)

    # Code of the one live transaction holding this parcel (compare-and-swap token)
    active_transaction_code = Column(String(20), nullable=True)
    reserved_at = Column(DateTime, nullable=True)

    added_by = Column(Integer, ForeignKey("users.id"), nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_land_location", "village", "district", "state"),
    )


class OwnershipRecord(Base):
    """One tenure in a parcel's append-only ownership history"""
    __tablename__ = "ownership_records"

    id = Column(Integer, primary_key=True, index=True)
    land_id = Column(Integer, ForeignKey("lands.id"), nullable=False, index=True)

    # Order in history
    sequence = Column(Integer, nullable=False)

    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    from_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    to_date = Column(DateTime, nullable=True)  # set exactly once, when superseded
    transfer_type = Column(Enum(TransferType), nullable=False)
    document_reference = Column(String(100), nullable=True)

    __table_args__ = (
        UniqueConstraint("land_id", "sequence", name="uq_ownership_records_land_sequence"),
        # At most one open tenure per parcel
        Index(
            "uq_ownership_records_open_tenure",
            "land_id",
            unique=True,
            sqlite_where=text("to_date IS NULL"),
            postgresql_where=text("to_date IS NULL"),
        ),
    )
