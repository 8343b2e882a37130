import uuid

from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from threadline.database import Base


class Thread(Base):
    __tablename__ = "threads"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    external_id = Column(Text, nullable=False, unique=True)
    kind = Column(Text, nullable=False, default="individual")  # individual, group
    service = Column(Text)  # whatsapp, sms, ...
    thread_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
    last_message_at = Column(TIMESTAMP(timezone=True))

    participants = relationship("Participant", back_populates="thread")
    messages = relationship("Message", back_populates="thread")
