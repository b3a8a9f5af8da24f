import enum
import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


def _new_id() -> str:
    return uuid.uuid4().hex


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ISSUED = "issued"
    RETURNED = "returned"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, raw: "str | RequestStatus | None") -> "RequestStatus | None":
        if isinstance(raw, RequestStatus):
            return raw
        value = (raw or "").strip().lower()
        for member in cls:
            if member.value == value:
                return member
        return None


# Units are held from approval until the borrower hands them back.
OUTSTANDING_STATUSES = frozenset({RequestStatus.APPROVED, RequestStatus.ISSUED, RequestStatus.OVERDUE})
OPEN_STATUSES = frozenset({RequestStatus.PENDING}) | OUTSTANDING_STATUSES
TERMINAL_STATUSES = frozenset({RequestStatus.RETURNED, RequestStatus.REJECTED, RequestStatus.CANCELLED})


class Equipment(Base):
    __tablename__ = "Equipment"

    Id = Column(String(36), primary_key=True, default=_new_id)
    Name = Column(String(255), nullable=False)
    Category = Column(String(100), nullable=False, default="")
    Condition = Column(String(100))
    Description = Column(String(1000))
    Quantity = Column(Integer, nullable=False, default=0)
    AvailableQuantity = Column(Integer, nullable=False, default=0)
    IsDeleted = Column(Boolean, nullable=False, default=False)
    DeletedAt = Column(DateTime)
    DeletedBy = Column(String(64))
    Version = Column(Integer, nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Requests = relationship("BorrowRequest", back_populates="Equipment")

    __mapper_args__ = {"version_id_col": Version}


class BorrowRequest(Base):
    __tablename__ = "Requests"
    __table_args__ = (
        Index("IX_Requests_Equipment_Status", "EquipmentId", "Status"),
        Index("IX_Requests_User", "UserId"),
    )

    Id = Column(String(36), primary_key=True, default=_new_id)
    UserId = Column(String(64), nullable=False)
    EquipmentId = Column(String(36), ForeignKey("Equipment.Id"), nullable=False)
    Quantity = Column(Integer, nullable=False)
    Status = Column(String(20), nullable=False, default=RequestStatus.PENDING.value)
    RequestedAt = Column(DateTime)
    ApprovedAt = Column(DateTime)
    ApprovedBy = Column(String(64))
    RejectedAt = Column(DateTime)
    RejectedBy = Column(String(64))
    IssuedAt = Column(DateTime)
    DueDate = Column(DateTime)
    ReturnedAt = Column(DateTime)
    CancelledAt = Column(DateTime)
    CancelledBy = Column(String(64))
    Notes = Column(String(1000))
    AdminNotes = Column(String(1000))
    UpdatedDate = Column(DateTime, server_default=func.now())

    Equipment = relationship("Equipment", back_populates="Requests")

    @property
    def status(self) -> RequestStatus:
        parsed = RequestStatus.parse(self.Status)
        if parsed is None:
            raise ValueError(f"Unknown request status stored: {self.Status!r}")
        return parsed


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True, autoincrement=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(String(36), nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(String(64))
    CreatedAt = Column(DateTime, server_default=func.now())
