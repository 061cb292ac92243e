from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict


class ReservationItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    quantity: int = 1
    name: Optional[str] = None


class CreateReservationDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    purpose: str
    purposeDetail: str = ""
    startDate: str
    endDate: str
    leaderName: Optional[str] = None
    leaderPhone: Optional[str] = None
    leaderStudentID: Optional[str] = None
    leaderEmail: Optional[str] = None
    items: List[ReservationItemDto] = []


class UpdateItemsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    items: List[ReservationItemDto] = []


class StatusChangeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Literal["pending", "approved", "rented", "returned", "rejected", "cancelled"]
    repairNote: Optional[str] = None


class AssignmentDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    assetIDs: List[int] = []


class AssignRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    assignments: List[AssignmentDto] = []


class UpdateAssignmentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    oldAssetIDs: List[int] = []
    newAssetIDs: List[int] = []


class AssetReturnDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    assetID: int
    condition: Literal["normal", "damaged", "missing_parts"] = "normal"
    notes: Optional[str] = None


class ReturnAssetsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    returns: List[AssetReturnDto] = []
