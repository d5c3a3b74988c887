"""AgentProfile model - read projection of the agent directory."""

from sqlalchemy import Column, String, Integer, Float, Boolean

from .base import Base, PortableJSONB, UTCDateTime, utcnow


class AgentProfile(Base):
    """Agent directory projection used as the SQL candidate source.

    Maintained by the agent directory's own events; the matching service
    only reads it.
    """

    __tablename__ = "agent_profile"

    agent_id = Column(String(64), primary_key=True)
    tier = Column(String(10), nullable=False, default="BENCH")
    specializations = Column(PortableJSONB, nullable=False, default=list)
    languages = Column(PortableJSONB, nullable=False, default=list)
    destinations = Column(PortableJSONB, nullable=False, default=list)
    rating = Column(Float, nullable=False, default=0.0)
    completed_bookings = Column(Integer, nullable=False, default=0)
    response_time_p50_hours = Column(Float, nullable=True)
    response_time_p90_hours = Column(Float, nullable=True)
    is_available = Column(Boolean, nullable=False, default=True)
    current_workload = Column(Integer, nullable=False, default=0)
    max_workload = Column(Integer, nullable=False, default=10)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<AgentProfile(agent_id={self.agent_id}, tier={self.tier})>"
