from typing import Optional

from pydantic import BaseModel, ConfigDict


class EquipmentCreateDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    category: str = "Other"
    serialNumber: Optional[str] = None
    description: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    condition: Optional[str] = None
    location: Optional[str] = None
    trackingTag: Optional[str] = None


class EquipmentUpdateDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    location: Optional[str] = None
    trackingTag: Optional[str] = None


class EquipmentStatusDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str
    condition: Optional[str] = None


class ClassroomCreateDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    hasScreen: bool = False


class ClassroomUpdateDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    hasScreen: Optional[bool] = None


class DeviceReportDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    tag: str
    status: str
    location: Optional[str] = None
    battery: Optional[int] = None
    lat: Optional[float] = None
    lng: Optional[float] = None


class ConfigUpdateDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    maxLoanHours: Optional[int] = None
    latePenaltyPerDay: Optional[int] = None
    overdueSweepPenalty: Optional[int] = None
    presenceTimeoutMinutes: Optional[int] = None
    minBorrowScore: Optional[int] = None
    defaultReservationHours: Optional[int] = None
