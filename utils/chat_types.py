from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class UserType(str, Enum):
    student = "student"
    mentor = "mentor"


class MessageKind(str, Enum):
    text = "text"
    image = "image"
    video = "video"
    gif = "gif"
    poll = "poll"


MEDIA_KINDS = {MessageKind.image, MessageKind.video, MessageKind.gif}


class PollOption(BaseModel):
    id: str
    text: str
    votes: int = 0


class PollData(BaseModel):
    question: str
    options: List[PollOption]
    total_votes: int = 0
    # Ordered, but each user id appears at most once.
    voted_users: List[str] = Field(default_factory=list)

    @classmethod
    def create(cls, question: str, options: List[str]) -> "PollData":
        return cls(
            question=question.strip(),
            options=[PollOption(id=f"opt_{i}", text=t.strip()) for i, t in enumerate(options) if t and t.strip()],
        )

    def has_voted(self, user_id: str) -> bool:
        return user_id in self.voted_users

    def with_vote(self, user_id: str, option_id: str) -> "PollData":
        """Return a copy with the vote applied; ``self`` when the vote does not count."""
        if self.has_voted(user_id) or not any(o.id == option_id for o in self.options):
            return self
        return self.model_copy(
            update={
                "options": [
                    o.model_copy(update={"votes": o.votes + 1}) if o.id == option_id else o
                    for o in self.options
                ],
                "total_votes": self.total_votes + 1,
                "voted_users": [*self.voted_users, user_id],
            }
        )


class ChatMessage(BaseModel):
    id: str
    user_id: str
    user_name: str
    user_type: UserType
    text: str = ""
    timestamp: datetime
    kind: MessageKind = MessageKind.text
    media_url: Optional[str] = None
    poll_data: Optional[PollData] = None
    region: Optional[str] = None


class SlowModeSettings(BaseModel):
    enabled: bool = False
    interval_seconds: int = Field(default=10, ge=5, le=60)
    last_message_time: Dict[str, datetime] = Field(default_factory=dict)
