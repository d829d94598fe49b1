"""
Tour model
"""

from sqlalchemy import Column, String, Integer, Numeric, Enum
from sqlalchemy.orm import relationship
import enum

from tourpay.models.base import BaseModel


class TourStatus(str, enum.Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class Tour(BaseModel):
    """
    Bookable tour. Only PUBLISHED tours accept bookings.

    reservation_version is bumped by every booking unit of work for the tour
    and doubles as the per-tour reservation lock.
    """
    __tablename__ = "tours"

    title = Column(String(255), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    max_group_size = Column(Integer, nullable=False)
    status = Column(
        Enum(TourStatus),
        default=TourStatus.DRAFT,
        nullable=False,
        index=True
    )
    reservation_version = Column(Integer, default=0, nullable=False)

    # Relationships
    bookings = relationship("Booking", back_populates="tour")

    @property
    def is_bookable(self) -> bool:
        return self.status == TourStatus.PUBLISHED

    def __repr__(self):
        return f"<Tour(id={self.id}, title={self.title}, max_group_size={self.max_group_size})>"
