from sqlalchemy import Column, String, Boolean, JSON
from dataexport.core.database import Base


class Location(Base):
    __tablename__ = "locations"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    identifiers = Column(JSON, nullable=True)  # [{"code": "...", "description": "..."}]
    parent_location_id = Column(String, nullable=True, index=True)
    geographical_level_id = Column(String, nullable=True)  # e.g. LNG_REFERENCE_DATA_CATEGORY_LOCATION_GEOGRAPHICAL_LEVEL_ADMIN_LEVEL_1
    deleted = Column(Boolean, default=False, nullable=False)
