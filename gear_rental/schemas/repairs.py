from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class CreateRepairDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    damageType: Literal["damaged", "lost", "missing_parts"] = "damaged"
    damageDescription: str
    reservationID: Optional[int] = None
    assetID: Optional[int] = None
    equipmentName: Optional[str] = None
    serialNumber: Optional[str] = None
    studentName: Optional[str] = None
    studentPhone: Optional[str] = None


class AdvanceRepairRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    stage: Optional[str] = None
    chargeType: Optional[str] = None
    estimateMemo: Optional[str] = None
    finalAmount: Optional[float] = None
    repairResult: Optional[str] = None
    adminMemo: Optional[str] = None


class RevertRepairRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    targetStage: str


class CompleteRepairRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    repairResult: str
    adminMemo: Optional[str] = None


class RepairFixedRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    isFixed: bool


class RepairMemoRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    adminMemo: str = ""
