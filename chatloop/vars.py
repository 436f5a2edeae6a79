import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "chatloop")
SESSION_FIELD_NAME = os.environ.get("SESSION_FIELD_NAME", "x-chatloop-session")
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))

LLM_URL = os.getenv("LLM_URL", "")
LLM_TOKEN = os.getenv("LLM_TOKEN", "")
LLM_MODEL_NAME = os.getenv("LLM_MODEL_NAME", "")
LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.6"))
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "300"))

# Empty MEMORY_DIR keeps conversations in process memory only
MEMORY_DIR = os.getenv("MEMORY_DIR", "")
MEMORY_MAX_MESSAGES = int(os.getenv("MEMORY_MAX_MESSAGES", "19"))

WORKFLOW_CONFIDENCE_THRESHOLD = float(
    os.getenv("WORKFLOW_CONFIDENCE_THRESHOLD", "0.8")
)
GENERIC_ASSISTANCE_ACTION = os.getenv(
    "GENERIC_ASSISTANCE_ACTION", "intelligent_assistance"
)

AGENT_NAME = os.getenv("AGENT_NAME", "Chatloop")
AGENT_LANGUAGE = os.getenv("AGENT_LANGUAGE", "English")
AGENT_TIMEZONE = os.getenv("AGENT_TIMEZONE", "UTC")

INCLUDE_TOOLS = [t for t in os.environ.get("INCLUDE_TOOLS", "").split(",") if t]
EXCLUDE_TOOLS = [t for t in os.environ.get("EXCLUDE_TOOLS", "").split(",") if t]

# JSON file with {"servers": [{"name", "command", "args", "env"}]}; optional
MCP_CONFIG_PATH = os.getenv("MCP_CONFIG_PATH", "mcp.json")
MCP_CONNECT_TIMEOUT_SECONDS = float(os.getenv("MCP_CONNECT_TIMEOUT_SECONDS", "20"))
MCP_SERVER_COMMAND = os.getenv("MCP_SERVER_COMMAND", "")
MCP_SERVER_ARGS = [a for a in os.getenv("MCP_SERVER_ARGS", "").split(" ") if a]

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
