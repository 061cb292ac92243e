from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..db.base import Base


class Category(Base):
    __tablename__ = "Categories"

    CategoryID = Column(Integer, primary_key=True)
    CategoryName = Column(String(100), nullable=False)
    ParentCategoryID = Column(Integer, ForeignKey("Categories.CategoryID"))
    SortOrder = Column(Integer)
    CreatedDate = Column(DateTime, server_default=func.now())

    ParentCategory = relationship("Category", remote_side=[CategoryID])
    Equipment = relationship("Equipment", back_populates="Category")


class Equipment(Base):
    __tablename__ = "Equipment"

    EquipmentID = Column(Integer, primary_key=True)
    EquipmentName = Column(String(255), nullable=False)
    CategoryID = Column(Integer, ForeignKey("Categories.CategoryID"))
    Description = Column(String(2000))
    Manufacturer = Column(String(255))
    ImagePath = Column(String(1000))
    TotalQuantity = Column(Integer, nullable=False, default=0)
    IsVisible = Column(Boolean, nullable=False, default=True)
    SortOrder = Column(Integer, nullable=False, default=999)
    IsGroupPrint = Column(Boolean, nullable=False, default=False)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Category = relationship("Category", back_populates="Equipment")
    Assets = relationship("Asset", back_populates="Equipment", cascade="all, delete-orphan")


class Asset(Base):
    __tablename__ = "Assets"

    AssetID = Column(Integer, primary_key=True)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False, index=True)
    SerialNumber = Column(String(200))
    ManagementCode = Column(String(100))
    Status = Column(String(20), nullable=False, default="available", index=True)
    Note = Column(String(1000))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Equipment = relationship("Equipment", back_populates="Assets")
    History = relationship("AssetHistory", back_populates="Asset", cascade="all, delete-orphan")
    Assignments = relationship("ReservationItemAsset", back_populates="Asset", cascade="all, delete-orphan")


class AssetHistory(Base):
    __tablename__ = "AssetHistory"

    AssetHistoryID = Column(Integer, primary_key=True)
    AssetID = Column(Integer, ForeignKey("Assets.AssetID"), nullable=False, index=True)
    ReservationID = Column(Integer, index=True)
    UserID = Column(String(100))
    UserName = Column(String(255))
    EquipmentName = Column(String(255))
    SerialNumber = Column(String(200))
    Action = Column(String(30), nullable=False)
    ReturnCondition = Column(String(20))
    ReturnNotes = Column(String(1000))
    Timestamp = Column(DateTime, nullable=False, server_default=func.now())

    Asset = relationship("Asset", back_populates="History")


class Reservation(Base):
    __tablename__ = "Reservations"

    ReservationID = Column(Integer, primary_key=True)
    ReservationNumber = Column(String(50), nullable=False, index=True)
    UserID = Column(String(100), nullable=False, index=True)
    Status = Column(String(20), nullable=False, default="pending", index=True)
    Purpose = Column(String(200), nullable=False)
    PurposeDetail = Column(String(2000), nullable=False, default="")
    StartDate = Column(DateTime, nullable=False, index=True)
    EndDate = Column(DateTime, nullable=False)
    # Snapshot of the requesting user at creation time; not kept in sync.
    LeaderName = Column(String(255), nullable=False, default="")
    LeaderPhone = Column(String(50), nullable=False, default="")
    LeaderStudentID = Column(String(50), nullable=False, default="")
    LeaderEmail = Column(String(255))
    ApprovedBy = Column(String(100))
    ApprovalDate = Column(DateTime)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Items = relationship(
        "ReservationItem",
        back_populates="Reservation",
        cascade="all, delete-orphan",
        order_by="ReservationItem.Position",
    )


class ReservationItem(Base):
    __tablename__ = "ReservationItems"

    ReservationItemID = Column(Integer, primary_key=True)
    ReservationID = Column(Integer, ForeignKey("Reservations.ReservationID"), nullable=False, index=True)
    Position = Column(Integer, nullable=False, default=0)
    # Plain reference: items outlive a deleted equipment type through ItemName.
    EquipmentID = Column(Integer, nullable=False, index=True)
    ItemName = Column(String(255), nullable=False)
    Quantity = Column(Integer, nullable=False, default=1)
    CheckedOut = Column(Boolean, nullable=False, default=False)
    Returned = Column(Boolean, nullable=False, default=False)

    Reservation = relationship("Reservation", back_populates="Items")
    AssetLinks = relationship(
        "ReservationItemAsset",
        back_populates="Item",
        cascade="all, delete-orphan",
        order_by="ReservationItemAsset.Position",
    )

    @property
    def AssignedAssetIDs(self) -> list[int]:
        return [link.AssetID for link in self.AssetLinks]


class ReservationItemAsset(Base):
    __tablename__ = "ReservationItemAssets"
    __table_args__ = (UniqueConstraint("ReservationItemID", "AssetID", name="uq_item_asset"),)

    ReservationItemAssetID = Column(Integer, primary_key=True)
    ReservationItemID = Column(Integer, ForeignKey("ReservationItems.ReservationItemID"), nullable=False, index=True)
    AssetID = Column(Integer, ForeignKey("Assets.AssetID"), nullable=False, index=True)
    Position = Column(Integer, nullable=False, default=0)
    ReturnCondition = Column(String(20))
    ReturnNotes = Column(String(1000))
    ReturnedAt = Column(DateTime)

    Item = relationship("ReservationItem", back_populates="AssetLinks")
    Asset = relationship("Asset", back_populates="Assignments")


class RepairCase(Base):
    __tablename__ = "RepairCases"

    RepairCaseID = Column(Integer, primary_key=True)
    ReservationID = Column(Integer, index=True)
    AssetID = Column(Integer, index=True)
    EquipmentID = Column(Integer)
    # Display snapshots copied when the case is opened.
    ReservationNumber = Column(String(50))
    EquipmentName = Column(String(255))
    SerialNumber = Column(String(200))
    StudentName = Column(String(255))
    StudentPhone = Column(String(50))

    Stage = Column(String(30), nullable=False, default="damage_confirmed")
    DamageType = Column(String(20), nullable=False, default="damaged")
    DamageDescription = Column(String(2000), nullable=False, default="")
    DamageConfirmedAt = Column(DateTime)
    ChargeType = Column(String(30))
    ChargeDecidedAt = Column(DateTime)
    EstimateMemo = Column(String(2000))
    EstimateRequestedAt = Column(DateTime)
    FinalAmount = Column(Numeric(12, 2))
    PaymentConfirmedAt = Column(DateTime)
    RepairResult = Column(String(20))
    CompletedAt = Column(DateTime)
    AdminMemo = Column(String(2000), nullable=False, default="")
    IsFixed = Column(Boolean, nullable=False, default=False)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())


class ChangeHistory(Base):
    __tablename__ = "ChangeHistory"
    __table_args__ = (
        Index("ix_changehistory_target", "TargetID"),
        Index("ix_changehistory_batch", "BatchID"),
    )

    ChangeHistoryID = Column(Integer, primary_key=True)
    VersionMajor = Column(Integer, nullable=False)
    VersionMinor = Column(Integer, nullable=False)
    UserID = Column(String(100), nullable=False)
    UserName = Column(String(255), nullable=False)
    UserEmail = Column(String(255), nullable=False, default="")
    TargetType = Column(String(30), nullable=False)
    TargetID = Column(String(50), nullable=False)
    TargetName = Column(String(255), nullable=False)
    Action = Column(String(20), nullable=False)
    Changes = Column(String, nullable=False, default="[]")
    Source = Column(String(20), nullable=False, default="manual")
    SourceDetail = Column(String(500))
    BatchID = Column(String(64))
    Timestamp = Column(DateTime, nullable=False, server_default=func.now())


class Notification(Base):
    __tablename__ = "Notifications"

    NotificationID = Column(Integer, primary_key=True)
    UserID = Column(String(100), nullable=False, index=True)
    NotificationType = Column(String(50), nullable=False)
    Title = Column(String(200), nullable=False)
    Message = Column(String(2000), nullable=False)
    RelatedID = Column(Integer)
    IsRead = Column(Boolean, nullable=False, default=False)
    ReadAt = Column(DateTime)
    CreatedAt = Column(DateTime, server_default=func.now())


class ImportLog(Base):
    __tablename__ = "ImportLogs"

    ImportLogID = Column(Integer, primary_key=True)
    UserID = Column(String(100), nullable=False)
    UserName = Column(String(255), nullable=False)
    UserEmail = Column(String(255))
    FileName = Column(String(500), nullable=False)
    BatchID = Column(String(64), nullable=False)
    EquipmentCreated = Column(Integer, nullable=False, default=0)
    EquipmentUpdated = Column(Integer, nullable=False, default=0)
    EquipmentErrors = Column(Integer, nullable=False, default=0)
    AssetCreated = Column(Integer, nullable=False, default=0)
    AssetUpdated = Column(Integer, nullable=False, default=0)
    AssetErrors = Column(Integer, nullable=False, default=0)
    CreatedAt = Column(DateTime, server_default=func.now())
