from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


UNIT_STATUSES = ("Available", "CheckedOut", "Maintenance", "Damaged", "Lost")
UNIT_CONDITIONS = ("Excellent", "Good", "Fair", "Poor", "Damaged")
UNIT_CATEGORIES = (
    "Laptop",
    "Projector",
    "Camera",
    "Microphone",
    "Tablet",
    "Audio",
    "Video",
    "Router",
    "Accessories",
    "Electronics",
    "Other",
)
TRACKING_STATUSES = ("Safe", "Unknown", "Lost")

USER_ROLES = ("Student", "Staff", "Security", "IT", "Admin")

LOAN_STATUSES = (
    "Provisional",
    "Pending",
    "Reserved",
    "CheckedOut",
    "PendingReturn",
    "Overdue",
    "Returned",
    "Cancelled",
    "Denied",
    "Failed",
)


class Equipment(Base):
    __tablename__ = "Equipment"

    EquipmentID = Column(Integer, primary_key=True)
    SerialNumber = Column(String(100), nullable=False, unique=True)
    Name = Column(String(255), nullable=False)
    Category = Column(String(50), nullable=False, default="Other")
    Description = Column(String(1000), default="")
    Brand = Column(String(100), default="")
    Model = Column(String(100), default="")
    Status = Column(String(20), nullable=False, default="Available")
    Condition = Column(String(20), nullable=False, default="Good")
    Location = Column(String(255), default="Main Storage")
    Latitude = Column(Float)
    Longitude = Column(Float)
    TrackingTag = Column(String(100), unique=True)
    TrackingStatus = Column(String(20), nullable=False, default="Unknown")
    LastSeenAt = Column(DateTime)
    BatteryLevel = Column(Integer, default=100)
    IsRetired = Column(Boolean, nullable=False, default=False)
    AddedBy = Column(Integer, ForeignKey("Users.UserID"))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Transactions = relationship("LoanTransaction", back_populates="Equipment")


class User(Base):
    __tablename__ = "Users"

    UserID = Column(Integer, primary_key=True)
    Username = Column(String(100), nullable=False, unique=True)
    FullName = Column(String(255), nullable=False)
    Email = Column(String(255), nullable=False)
    StudentNumber = Column(String(50), unique=True)
    Role = Column(String(20), nullable=False, default="Student")
    ResponsibilityScore = Column(Integer, nullable=False, default=100)
    IsActive = Column(Boolean, nullable=False, default=True)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Transactions = relationship("LoanTransaction", back_populates="User", foreign_keys="LoanTransaction.UserID")


class LoanTransaction(Base):
    __tablename__ = "Transactions"
    __table_args__ = (
        Index("ix_transactions_equipment_status", "EquipmentID", "Status"),
        Index("ix_transactions_user_status", "UserID", "Status"),
    )

    TransactionID = Column(Integer, primary_key=True)
    UserID = Column(Integer, ForeignKey("Users.UserID"), nullable=False)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False)
    Status = Column(String(20), nullable=False, default="Pending")
    StartTime = Column(DateTime, nullable=False)
    ExpectedReturnTime = Column(DateTime, nullable=False)
    CheckoutTime = Column(DateTime)
    ReturnTime = Column(DateTime)
    ReturnRequestedAt = Column(DateTime)
    OverduePenalizedAt = Column(DateTime)
    Destination = Column(String(255), nullable=False)
    Purpose = Column(String(1000), nullable=False)
    Notes = Column(String(2000))
    ReturnCondition = Column(String(20))
    CreatedBy = Column(Integer)
    ApprovedBy = Column(Integer)
    CreatedDate = Column(DateTime, nullable=False)
    UpdatedDate = Column(DateTime)

    User = relationship("User", back_populates="Transactions", foreign_keys=[UserID])
    Equipment = relationship("Equipment", back_populates="Transactions")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())


class Notification(Base):
    __tablename__ = "Notifications"

    NotificationID = Column(Integer, primary_key=True)
    RecipientID = Column(Integer, ForeignKey("Users.UserID"), nullable=False)
    Title = Column(String(255), nullable=False)
    Message = Column(String(2000), nullable=False)
    Severity = Column(String(20), nullable=False, default="info")
    RelatedID = Column(String(50))
    IsRead = Column(Boolean, nullable=False, default=False)
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)


class Classroom(Base):
    __tablename__ = "Classrooms"

    ClassroomID = Column(Integer, primary_key=True)
    Name = Column(String(100), nullable=False, unique=True)
    HasScreen = Column(Boolean, nullable=False, default=False)
    CreatedDate = Column(DateTime, server_default=func.now())


class SystemConfig(Base):
    __tablename__ = "SystemConfig"

    ConfigID = Column(Integer, primary_key=True)
    MaxLoanHours = Column(Integer, nullable=False, default=24)
    LatePenaltyPerDay = Column(Integer, nullable=False, default=5)
    OverdueSweepPenalty = Column(Integer, nullable=False, default=3)
    PresenceTimeoutMinutes = Column(Integer, nullable=False, default=5)
    MinBorrowScore = Column(Integer, nullable=False, default=60)
    DefaultReservationHours = Column(Integer, nullable=False, default=2)
    UpdatedDate = Column(DateTime, server_default=func.now())
