from typing import Optional

from pydantic import BaseModel, ConfigDict


class SendNotificationDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    userID: int
    title: Optional[str] = None
    message: Optional[str] = None
    type: str = "info"


class ContactAdminsDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    subject: Optional[str] = None
    message: Optional[str] = None
