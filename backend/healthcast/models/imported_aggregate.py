from sqlalchemy import Column, Date, DateTime, Index, Integer, String, func

from healthcast.db.base import Base


class ImportedAggregate(Base):
    __tablename__ = "imported_aggregates"

    id = Column(Integer, primary_key=True)
    entity_key = Column(String(64), nullable=False)
    period = Column(Date, nullable=False)  # first of month for monthly imports
    count = Column(Integer, nullable=False)
    location_id = Column(Integer, nullable=True)
    source_label = Column(String(128), nullable=True)
    imported_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_imported_aggregates_entity_period", "entity_key", "period"),
    )
