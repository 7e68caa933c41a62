"""
Per-chat human-in-the-loop dialogue state.

One ``DialogueState`` exists per chat session. It records the single open
dialogue step (if any), the context collected along the current workflow and
whether a long-running operation is in progress. Every reset bumps ``epoch``
so results of calls started before the reset can be recognised and dropped.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from mira.models.errors import DialogueStateError
from mira.models.schemas import (
    ActionPrompt,
    DialogueAction,
    RequestHumanInLoop,
    ScanResult,
    ScanSastResult,
)


@dataclass
class DialogueContext:
    """Values gathered across the steps of one workflow."""
    target_url: Optional[str] = None
    scan_type: Optional[str] = None
    repo_type: Optional[str] = None
    folder_id: Optional[str] = None
    # Input step to resume after a folder is created
    next_input_type: Optional[str] = None
    scan_result: Optional[ScanResult] = None
    sast_result: Optional[ScanSastResult] = None
    chat_summary: Optional[str] = None


@dataclass
class DialogueState:
    pending_action: Optional[str] = None
    action_type: Optional[DialogueAction] = None
    confirm_type: Optional[str] = None
    human_in_the_loop_message: Optional[str] = None
    action_prompts: list[ActionPrompt] = field(default_factory=list)
    request: Optional[RequestHumanInLoop] = None
    busy: Optional[str] = None
    epoch: int = 0
    context: DialogueContext = field(default_factory=DialogueContext)

    @property
    def is_open(self) -> bool:
        return self.pending_action is not None

    @property
    def is_idle(self) -> bool:
        return self.pending_action is None and self.busy is None

    def open(
        self,
        request: RequestHumanInLoop,
        prompts: list[ActionPrompt],
        hitl_message: str,
    ) -> None:
        """Open a dialogue step awaiting a reply to message ``request.id``."""
        if self.pending_action is not None:
            raise DialogueStateError(
                f"Dialogue step {self.pending_action} is still open; cannot open {request.id}"
            )
        if not request.id:
            raise DialogueStateError("A dialogue step needs the id of the message it waits on")
        self.pending_action = request.id
        self.action_type = request.action
        self.confirm_type = request.type
        self.human_in_the_loop_message = hitl_message
        self.action_prompts = list(prompts)
        self.request = request

    def resolve(self) -> Optional[RequestHumanInLoop]:
        """Close the open step and return the request it answered."""
        request = self.request
        self.pending_action = None
        self.action_type = None
        self.confirm_type = None
        self.human_in_the_loop_message = None
        self.action_prompts = []
        self.request = None
        return request

    def reset(self) -> None:
        """Return to freeform, discarding workflow context and any in-flight results."""
        self.resolve()
        self.busy = None
        self.context = DialogueContext()
        self.epoch += 1

    def expects(self, action: DialogueAction, confirm_type: Optional[str] = None) -> bool:
        if self.request is None or self.request.action != action:
            return False
        return confirm_type is None or self.request.type == confirm_type

    def find_prompt(self, choice: str, option_id: Optional[str] = None) -> Optional[ActionPrompt]:
        """Match a reply against the open options by id, name (case-insensitive) or 1-based index."""
        if option_id is not None:
            for prompt in self.action_prompts:
                if prompt.id == option_id:
                    return prompt
        text = (choice or "").strip()
        lowered = text.lower()
        for prompt in self.action_prompts:
            if prompt.name.lower() == lowered:
                return prompt
        if text.isdigit():
            index = int(text) - 1
            if 0 <= index < len(self.action_prompts):
                return self.action_prompts[index]
        return None

    def snapshot(self) -> dict[str, Any]:
        """Read-only projection rendered by the view layer."""
        if self.action_type is None:
            widget = None
        elif self.action_type == DialogueAction.APPROVAL:
            widget = "approval"
        elif self.action_type in (DialogueAction.INPUT, DialogueAction.SAST_INPUT):
            widget = "input"
        else:
            widget = "options"
        return {
            "pending_action": self.pending_action,
            "action_type": self.action_type.value if self.action_type else None,
            "confirm_type": self.confirm_type,
            "human_in_the_loop_message": self.human_in_the_loop_message,
            "action_prompts": [p.model_dump() for p in self.action_prompts],
            "request": self.request.model_dump(mode="json") if self.request else None,
            "widget": widget,
            "busy": self.busy,
            "epoch": self.epoch,
        }

