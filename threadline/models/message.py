import uuid

from sqlalchemy import Column, ForeignKey, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from threadline.database import Base


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (UniqueConstraint("thread_id", "external_id", name="uq_message_external_id"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    thread_id = Column(UUID(as_uuid=True), ForeignKey("threads.id"), nullable=False)
    sender_id = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    external_id = Column(Text, nullable=False)
    role = Column(Text, nullable=False, default="user")  # user, assistant
    message_type = Column(Text, nullable=False, default="text")
    content = Column(JSONB, nullable=False, default=dict)
    text = Column(Text, nullable=False, default="")
    message_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)

    thread = relationship("Thread", back_populates="messages")
    sender = relationship("User")
