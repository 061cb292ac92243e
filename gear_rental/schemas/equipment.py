from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict


class CategoryDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    categoryName: str
    parentCategoryID: Optional[int] = None
    sortOrder: Optional[int] = None


class EquipmentDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentName: str
    categoryID: Optional[int] = None
    description: Optional[str] = None
    manufacturer: Optional[str] = None
    imagePath: Optional[str] = None
    totalQuantity: int = 0
    isVisible: bool = True
    sortOrder: int = 999
    isGroupPrint: bool = False


class EquipmentUpdateDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentName: Optional[str] = None
    categoryID: Optional[int] = None
    description: Optional[str] = None
    manufacturer: Optional[str] = None
    imagePath: Optional[str] = None
    totalQuantity: Optional[int] = None
    isVisible: Optional[bool] = None
    sortOrder: Optional[int] = None
    isGroupPrint: Optional[bool] = None


class MoveEquipmentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    categoryID: int


class AssetDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    serialNumber: Optional[str] = None
    managementCode: Optional[str] = None
    status: Optional[str] = None
    note: Optional[str] = None


class AssetBatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    # Raw textarea contents; newline or comma separated.
    serialNumbers: Union[str, List[str]]


class ImportRowDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str
    categoryId: Optional[int] = None
    totalQuantity: Optional[int] = None
    sortOrder: Optional[int] = None
    isVisible: Optional[bool] = None
    isGroupPrint: Optional[bool] = None
    serials: List[Union[str, Dict[str, Any]]] = []


class ImportRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    fileName: str = "upload.xlsx"
    rows: List[ImportRowDto] = []
