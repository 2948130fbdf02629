from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class SubmitLoanDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    expectedReturnTime: datetime
    destination: str = ""
    purpose: str = ""
    userID: Optional[int] = None


class DenyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reason: Optional[str] = None


class CheckinRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    condition: Optional[str] = None


class CheckinByPairRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    userID: int
    equipmentID: int
    condition: Optional[str] = None


class ReserveDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    startTime: datetime
    endTime: Optional[datetime] = None
    destination: str = ""
    purpose: str = ""
