from sqlalchemy import Boolean, Column, DateTime, Float, Integer, JSON, String, UniqueConstraint

from activity_ingestion.db.database import Base

class ImportedActivity(Base):
    __tablename__ = "imported_activities"
    __table_args__ = (
        UniqueConstraint("provider", "provider_activity_id", name="uq_imported_activities_provider_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, index=True)
    provider = Column(String, nullable=False)
    provider_activity_id = Column(String, nullable=False)
    name = Column(String)
    type = Column(String)
    sport_type = Column(String)
    start_date = Column(DateTime(timezone=True), nullable=False, index=True)
    start_date_local = Column(DateTime(timezone=True))
    distance = Column(Float)
    moving_time = Column(Integer)
    elapsed_time = Column(Integer)
    total_elevation_gain = Column(Float)
    average_speed = Column(Float)
    max_speed = Column(Float)
    average_watts = Column(Float)
    kilojoules = Column(Integer)
    average_heartrate = Column(Float)
    max_heartrate = Column(Float)
    average_cadence = Column(Float)
    trainer = Column(Boolean, default=False)
    commute = Column(Boolean, default=False)
    map_summary_polyline = Column(String)
    raw_data = Column(JSON)
