"""
API Request/Response Models
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, List, Any

from mira.models.schemas import Chat, Message, Personality


class ChatMessageRequest(BaseModel):
    message: str = Field(..., min_length=1, description="User's message")
    user_id: str = Field(default="anonymous", description="Owner of a newly created chat")
    chat_id: Optional[str] = Field(None, description="Existing chat; omitted for the first turn")
    personality: Personality = Field(default=Personality.TUTOR, description="Agent personality for freeform answers")


class ChooseRequest(BaseModel):
    name: str = Field(..., description="Option name, or its 1-based index")
    option_id: Optional[str] = None


class ApproveRequest(BaseModel):
    approved: bool


class InputRequest(BaseModel):
    value: str


class TurnResponse(BaseModel):
    chat_id: Optional[str]
    messages: List[Message]
    state: Dict[str, Any]


class HistoryResponse(BaseModel):
    chat_id: str
    messages: List[Message]


class RelatedQuestionsRequest(BaseModel):
    userQuestion: Optional[str] = None
    aiAnswer: Optional[str] = None
    kgContext: str = ""
    previousQuestions: List[str] = Field(default_factory=list)


class RelatedQuestionsResponse(BaseModel):
    questions: List[str]


class ChatListResponse(BaseModel):
    chats: List[Chat]


class ChatSearchHit(BaseModel):
    chat_id: str
    chat_title: str
    message: Message


class ChatSearchResponse(BaseModel):
    hits: List[ChatSearchHit]
