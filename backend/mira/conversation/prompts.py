"""Scripted dialogue texts and option vocabularies."""

from mira.models.schemas import ActionPrompt, DialogueAction, Folder

CREATE_NEW_FOLDER = "Create New Folder"

SCAN_TYPES = [
    ActionPrompt(id="passive", name="Passive Scan", type="scan",
                 description="Observes traffic and responses without sending attack payloads."),
    ActionPrompt(id="active", name="Active Scan", type="scan",
                 description="Sends crafted requests to probe for exploitable vulnerabilities."),
]

STANDARDS = [
    ActionPrompt(id="owasp", name="OWASP Top 10", type="standards",
                 description="The ten most critical web application security risks."),
    ActionPrompt(id="pci-dss", name="PCI DSS", type="standards",
                 description="Payment Card Industry Data Security Standard."),
    ActionPrompt(id="hipaa", name="HIPAA", type="standards",
                 description="Health data privacy and security requirements."),
    ActionPrompt(id="iso-27001", name="ISO 27001", type="standards",
                 description="Information security management systems."),
    ActionPrompt(id="nist", name="NIST", type="standards",
                 description="NIST Cybersecurity Framework controls."),
]

REPOSITORY_TYPES = [
    ActionPrompt(id="public", name="Public Repository", type="github-scan",
                 description="Scan a publicly accessible GitHub repository."),
    ActionPrompt(id="private", name="Private Repository", type="github-scan",
                 description="Scan a private repository using an access token."),
]

CHAT_SUMMARY_REPORT = "Chat Summary Report"
VULNERABILITY_REPORT = "Vulnerability Report"

REPORT_TYPES = [
    ActionPrompt(id="chat-summary", name=CHAT_SUMMARY_REPORT, type="report",
                 description="Summarize this conversation."),
    ActionPrompt(id="vulnerability", name=VULNERABILITY_REPORT, type="report",
                 description="Scan the current target and report its vulnerabilities."),
]

# Folder prompt type per flow, used when listing folders for selection.
FOLDER_TYPE_SCAN = "scan-summary"
FOLDER_TYPE_SAST = "scan-sast-summary"
FOLDER_TYPE_CHAT = "chat-summary"

# Artifact report types
REPORT_TYPE_VULNERABILITY = "vulnerabilityReport"
REPORT_TYPE_CHAT_SUMMARY = "chatSummaryReport"

# Scripted AI messages
MSG_URL_RECEIVED = "Thank you for providing the URL. Please select the type of scan."
MSG_GITHUB_URL_RECEIVED = "Thank you for providing the URL. Please select type of repository."
MSG_SCAN_TYPE_RECEIVED = "Thank you for providing the scan type. Please select the standard you want to scan against."
MSG_REPO_TYPE_RECEIVED = "Thank you for selecting type of repository."
MSG_ASK_SUMMARY = "Do you want to generate a brief summary?"
MSG_ASK_SAVE = "Do you want to save this as a detailed report?"
MSG_ASK_SAVE_CHAT_SUMMARY = "Do you want to save this as a detailed Chat Summary report?"
MSG_FOLDER_PROMPT = "Thank you for folder name"
MSG_FOLDER_NAME_PROMPT = "Please enter a name for the new folder"
MSG_FILE_NAME_PROMPT = "Thank you for providing the file name"
MSG_REPORT_TYPE_RECEIVED = "Thank you for your response"
MSG_REPORT_PROMPT = "Which report would you like to generate?"
MSG_NEED_URL = "Please provide a URL to scan"
MSG_YES_OR_NO = "Please select either yes or no"
MSG_PICK_AN_OPTION = "Please choose one of the listed options."
MSG_FOLDER_EXISTS = "A folder with this name already exists."
MSG_CANCELLED = "Action cancelled. How else can I assist you?"
MSG_ERROR = "An error occurred while processing your request."
MSG_ANSWER_FAILED = "Failed to get answer."
MSG_OPTIONS_COMPLETED = "Human in the loop Action Completed"

# Headline rendered above the interaction widget, per expected input.
_HEADLINES = {
    DialogueAction.SCAN: "You can choose from the following:",
    DialogueAction.GITHUB_SCAN: "Select type of github repository. You can choose from the following:",
    DialogueAction.STANDARDS: "Select your preferred standard for the scan. You can choose from the following:",
    DialogueAction.REPORT: "What type of report do you want to generate?",
    DialogueAction.FOLDER: "Select or create a folder where you want to save the scan report.",
    DialogueAction.FOLDER_SAST: "Select or create a folder where you want to save the scan report.",
    DialogueAction.SAVE_CHAT_SUMMARY: "Select or create a folder where you want to save the chat summary report.",
    DialogueAction.INPUT: "Please enter the file name for the report",
    DialogueAction.SAST_INPUT: "Please enter the access token of github repository",
}
_DEFAULT_HEADLINE = "You can choose from the following options"


def headline_for(action: DialogueAction, prompt: str) -> str:
    """Human-in-the-loop headline for ``action``. Approvals reuse the prompt text."""
    if action == DialogueAction.APPROVAL:
        return prompt
    return _HEADLINES.get(action, _DEFAULT_HEADLINE)


def scan_summary(compliance_standard: str, total_issues: int) -> str:
    return f"Scan completed using **{compliance_standard}**. Found **{total_issues}** vulnerabilities."


def sast_summary(issues: int, hotspots: int) -> str:
    return f"Scan completed successfully. Found **{issues}** issues and **{hotspots}** hotspots."


def report_saved(artifact_id: str) -> str:
    return f"Report saved successfully. Click [here](/file/{artifact_id}) to view the report."


def folder_created(name: str) -> str:
    return f"Created folder {name}"


def folder_prompts(folders: list[Folder], folder_type: str) -> list[ActionPrompt]:
    """Synthetic "Create New Folder" option followed by the user's folders."""
    prompts = [ActionPrompt(id="new-folder", name=CREATE_NEW_FOLDER, type=folder_type,
                            description="Create a new folder for this report.")]
    prompts.extend(
        ActionPrompt(id=f.id, name=f.name, type=folder_type) for f in folders
    )
    return prompts


def option_prompts(options) -> list[ActionPrompt]:
    """Turn LLM-proposed options into indexed prompts for a ``random`` step."""
    return [
        ActionPrompt(id=str(i), name=o.option, type=o.option, description=o.description)
        for i, o in enumerate(options)
    ]
