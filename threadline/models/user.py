import uuid

from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from threadline.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    phone = Column(Text, nullable=False, unique=True)  # normalized: no "+" or whitespace
    name = Column(Text)
    user_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
    last_active_at = Column(TIMESTAMP(timezone=True))

    participations = relationship("Participant", back_populates="user")
