# /agentflow/config/strings.py

# This file contains all user-facing strings, making them easy to manage,
# update, and eventually localize without changing application logic.

# --- Validation ---
VALIDATION_REQUIRED = "This field is required. Please provide a response."
VALIDATION_FORMAT = "Please enter a valid response according to the required format."
VALIDATION_OPTION = "Please select one of the provided options."
VALIDATION_BAD_PATTERN = "Invalid validation pattern configured."
VALIDATION_RETRY_FALLBACK = "Please provide a valid response."

# Friendly messages for common validation patterns. Unknown patterns fall
# back to VALIDATION_FORMAT.
REGEX_ERROR_MESSAGES = {
    r"^[0-9]+$": "Please enter numbers only.",
    r"^[a-zA-Z]+$": "Please enter letters only.",
    r"^[a-zA-Z0-9]+$": "Please enter letters and numbers only.",
    r"^[\w\.-]+@[\w\.-]+\.[a-zA-Z]{2,}$": "Please enter a valid email address.",
    r"^\+?[1-9]\d{1,14}$": "Please enter a valid phone number.",
    r"^.{1,50}$": "Please keep your response under 50 characters.",
    r"^.{1,100}$": "Please keep your response under 100 characters.",
    r"^.{1,255}$": "Please keep your response under 255 characters.",
}

# --- System ---
SYSTEM_AGENT_NOT_FOUND = "I'm having trouble processing your request. Please try again."
SYSTEM_STEP_NOT_FOUND = "Sorry, I'm having trouble processing your request right now."
SYSTEM_GENERAL_ERROR = "I apologize, but I encountered an error. Please try again."
SYSTEM_TIMEOUT = "The conversation has timed out. Please start a new conversation."
SYSTEM_STRICT_VALIDATION_FAILED = (
    "I'm sorry, but the service you're trying to access is not available through this broadcast. "
    "Please check the available options or contact support."
)

# Keyed by the error type the pipeline maps failures to.
SYSTEM_ERROR_MESSAGES = {
    "agent_not_found": SYSTEM_AGENT_NOT_FOUND,
    "step_not_found": SYSTEM_STEP_NOT_FOUND,
    "general_error": SYSTEM_GENERAL_ERROR,
    "timeout": SYSTEM_TIMEOUT,
    "strict_validation_failed": SYSTEM_STRICT_VALIDATION_FAILED,
}

# --- Flow ---
FLOW_COMPLETED = "Thank you! Your conversation has been completed successfully."
FLOW_ABANDONED = "It looks like you've stepped away. Feel free to start a new conversation anytime."
FLOW_NEXT_STEP_MISSING = "Thank you for your responses!"
DEFAULT_STEP_PROMPT = "Please provide your response."
DEFAULT_OPTIONS_PROMPT = "Please choose an option:"
DEFAULT_LIST_TITLE = "Please select an option"
DEFAULT_LIST_BUTTON = "Select"
RETRY_PREFIX = "❌"

# --- AI ---
AI_DID_NOT_UNDERSTAND = "I'm sorry, I didn't understand that. Could you please try again?"
AI_PROCESSING_ERROR = "I'm sorry, I encountered an error processing your request. Please try again."
AI_MISSING_MESSAGE = "Please provide a valid response."
AI_ESCALATE_DEFAULT = "Let me connect you with a human agent who can help you better."
AI_ESCALATION_REASON = "AI requested human assistance"

# --- Confirmation ---
CONFIRM_YES_TOKEN = "confirm_yes"
CONFIRM_NO_TOKEN = "confirm_no"
CONFIRM_YES_TITLE = "Yes"
CONFIRM_NO_TITLE = "No"
CONFIRM_NOTHING_PENDING = "I'm sorry, I don't have any pending data to confirm. Please try again."
CONFIRM_RECORDED = "Thank you for confirming. I've recorded: {variable} = {value}"
CONFIRM_REJECTED_PREFIX = "No problem. "
CONFIRM_ASK_AGAIN = "Please provide your response again."

# --- Restart ---
RESTART_TOKEN = "restart"
CONTINUE_TOKEN = "continue"
RESTART_TITLE = "Restart"
CONTINUE_TITLE = "Continue"

# --- Broadcast ---
BROADCAST_DEFAULT_REPLY = "Thank you for your interest! We will get back to you soon."
BROADCAST_OPTIONS_PROMPT = "How can we help you today? Please select a service:"
