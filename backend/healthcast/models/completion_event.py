from sqlalchemy import Column, DateTime, Index, Integer, String

from healthcast.db.base import Base


class CompletionEvent(Base):
    """
    One completed transaction (appointment, card issuance, case report).
    Written by the operational system; read-only for forecasting.
    """

    __tablename__ = "completion_events"

    id = Column(Integer, primary_key=True)
    entity_key = Column(String(64), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=False)
    location_id = Column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_completion_events_entity_completed", "entity_key", "completed_at"),
    )
