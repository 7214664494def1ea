"""
paddock/orm/team.py
Competing teams. Referenced by the engines, never mutated by them.
"""
from sqlalchemy import Column, String
from sqlalchemy.orm import relationship

from paddock.orm.base import BaseModel


class Team(BaseModel):
    """
    A registered team and its vehicle.

    Attributes:
        name: Team display name
        vehicle_number: Car number painted on the vehicle
    """
    __tablename__ = "teams"

    name = Column(String(200), nullable=False, index=True)
    vehicle_number = Column(String(20), nullable=True)

    bookings = relationship("Booking", back_populates="team")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "vehicle_number": self.vehicle_number,
        }

    def __repr__(self):
        return f"<Team(id={self.id}, name='{self.name}')>"
