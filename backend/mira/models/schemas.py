from pydantic import BaseModel, ConfigDict, Field, computed_field
from typing import Any, Optional
from datetime import datetime, timezone
from enum import Enum
import uuid


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Sender(str, Enum):
    USER = "user"
    AI = "ai"


class Intent(str, Enum):
    NEGATION = "negation"
    CLARIFICATION = "clarification"
    GITHUB_URL_SCAN = "github_url_scan"
    PLAIN_URL_SCAN = "plain_url_scan"
    FREEFORM = "freeform"


class DialogueAction(str, Enum):
    """Expected-next-input vocabulary for a human-in-the-loop step."""
    SCAN = "scan"
    GITHUB_SCAN = "github-scan"
    STANDARDS = "standards"
    REPORT = "report"
    APPROVAL = "approval"
    FOLDER = "folder"
    FOLDER_SAST = "folder-sast"
    SAVE_CHAT_SUMMARY = "save-chat-summary"
    INPUT = "input"
    SAST_INPUT = "sast-input"
    RANDOM = "random"


class ConfirmType(str, Enum):
    NONE = "none"
    REPORT = "report"
    SAST_REPORT = "sast-report"
    SAVE = "save"
    SAVE_SAST_SUMMARY = "save-sast-summary"
    SAVE_CHAT_SUMMARY = "save-chat-summary"
    CREATE_FILE = "create-file"
    SAST_SUMMARY_CREATE_FILE = "sast-summary-create-file"
    CHAT_SUMMARY_CREATE_FILE = "chat-summary-create-file"
    CREATE_FOLDER = "create-folder"
    GITHUB_SCAN = "github-scan"
    SUMMARY = "summary"


class Personality(str, Enum):
    TUTOR = "tutor"
    INVESTIGATOR = "investigator"
    ANALYST = "analyst"


# ── Message payloads ────────────────────────────────────────────────────


class ReasoningStep(BaseModel):
    step: Optional[str] = None
    message: Optional[str] = None
    narrative: Optional[str] = None


class Jargon(BaseModel):
    term: str
    description: str


class SourceLink(BaseModel):
    title: str
    url: str
    type: str = "reference"


class ActionPrompt(BaseModel):
    """An option offered while its parent RequestHumanInLoop is active."""
    id: str
    name: str
    type: str
    description: str = ""


class RequestHumanInLoop(BaseModel):
    action: DialogueAction
    prompt: str = ""
    type: str = ConfirmType.NONE.value
    id: Optional[str] = None


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    chat_id: Optional[str] = None
    sender: Sender
    text: str
    created_at: datetime = Field(default_factory=_now)

    reasoning_trace: Optional[list[ReasoningStep]] = None
    jargons: Optional[list[Jargon]] = None
    source_links: Optional[list[SourceLink]] = None
    tags: list[str] = Field(default_factory=list)
    duration_sec: Optional[float] = None

    # Human-in-the-loop annotations
    action_type: Optional[str] = None
    confirm_type: Optional[str] = None
    human_in_the_loop_message: Optional[str] = None
    action_prompts: list[ActionPrompt] = Field(default_factory=list)


class Chat(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    title: str
    tags: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class MessageEnrichment(BaseModel):
    """Optional AI-turn fields persisted next to the message text."""
    answer: Optional[str] = None
    reasoning: Optional[str] = None
    jargons: dict[str, str] = Field(default_factory=dict)
    source_links: list[SourceLink] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    severity: Optional[str] = None
    duration_sec: Optional[float] = None
    graph_data: Optional[dict[str, Any]] = None
    action_type: Optional[str] = None
    confirm_type: Optional[str] = None
    human_in_the_loop_message: Optional[str] = None


# ── Service payloads ────────────────────────────────────────────────────


class AnswerOption(BaseModel):
    option: str
    description: str = ""


class AnswerPayload(BaseModel):
    answer: str
    reasoning_trace: list[ReasoningStep] = Field(default_factory=list)
    jargons: list[Jargon] = Field(default_factory=list)
    source_links: list[SourceLink] = Field(default_factory=list)
    dynamic_tag: Optional[str] = None
    graph_data: Optional[dict[str, Any]] = None
    options: list[AnswerOption] = Field(default_factory=list)


class ScanResult(BaseModel):
    """DAST scan payload. Opaque apart from the fields used in chat summaries."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    url: str = ""
    compliance_standard_url: str = Field(default="", alias="complianceStandardUrl")
    totals: dict[str, Any] = Field(default_factory=dict)
    vulnerabilities: list[dict[str, Any]] = Field(default_factory=list)

    @computed_field
    @property
    def total_issues(self) -> int:
        if "totalIssues" in self.totals:
            return int(self.totals["totalIssues"])
        return len(self.vulnerabilities)


class ScanSastResult(BaseModel):
    """SAST repository scan payload."""
    model_config = ConfigDict(extra="allow")

    issues: list[dict[str, Any]] = Field(default_factory=list)
    hotspots: list[dict[str, Any]] = Field(default_factory=list)


class Folder(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    name: str
    created_at: datetime = Field(default_factory=_now)


class Artifact(BaseModel):
    id: str = Field(default_factory=new_id)
    folder_id: str
    name: str
    markdown: str
    report_type: str
    created_at: datetime = Field(default_factory=_now)


# ── Events and accounting ───────────────────────────────────────────────


class ChatEvent(BaseModel):
    timestamp: datetime
    chat_id: str
    event_type: str  # "message", "progress", "chunk", "state", "toast", "related_questions"
    data: dict[str, Any] = Field(default_factory=dict)


class TokenUsage(BaseModel):
    agent_name: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
