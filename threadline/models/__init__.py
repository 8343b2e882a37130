from threadline.models.message import Message
from threadline.models.participant import Participant
from threadline.models.thread import Thread
from threadline.models.user import User

__all__ = ["Thread", "User", "Participant", "Message"]
