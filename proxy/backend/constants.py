APP_NAME = "Assistant Proxy"
APP_VERSION = "1.0.0"

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
OPENAI_BETA_HEADER = "assistants=v2"
DEFAULT_OPENAI_TIMEOUT_S = 60.0

DEFAULT_CORS_ALLOW_ORIGINS = [
	"https://www.talkingcare.uk",
]
CORS_ALLOW_METHODS = "GET, POST, OPTIONS"
CORS_ALLOW_HEADERS = "Content-Type, Accept"
CORS_MAX_AGE_S = 86400

RUN_PENDING_STATUSES = ("queued", "in_progress", "requires_action")
RUN_FAILED_STATUSES = ("failed", "cancelled", "expired")
RUN_COMPLETED_STATUS = "completed"

DEFAULT_POLL_INTERVAL_MS = 800
DEFAULT_POLL_TIMEOUT_S = 120
DEFAULT_POLL_MAX_ITERATIONS = 180
MESSAGE_LIST_LIMIT = 20

DEFAULT_PERSONA_TTL_S = 300
DEFAULT_MAX_CITATIONS = 5

DEFAULT_MAX_UPLOAD_BYTES = 20 * 1024 * 1024
DEFAULT_UPLOAD_POLL_TIMEOUT_S = 15
UPLOAD_POLL_INTERVAL_S = 0.8

STREAM_DONE_PAYLOAD = "[DONE]"
SSE_HEADERS = {
	"Cache-Control": "no-cache, no-transform",
	"Connection": "keep-alive",
	"X-Accel-Buffering": "no",
}

NO_SOURCES_REPLY = "No matching sources found in the library."
ATTACHMENT_ONLY_PROMPT = "Please review the attached file(s)."

DEFAULT_PERSONA = """
You are the Talking Care assistant, a friendly and practical guide for adult social care
providers in the UK. Answer clearly and concisely in British English. Explain regulatory
terms (for example CQC, KLOEs, safeguarding) in plain language and suggest concrete next
steps where they help. Never invent policies, figures or legal requirements.
""".strip()

GROUNDING_POLICY = f"""
Source policy:
- Search the files attached to this message first; they take priority over the general knowledge base.
- Only then use the knowledge base linked to this assistant.
- Cite the sources you relied on by filename, once, at the end of the answer.
- If nothing relevant is found in either, reply exactly: "{NO_SOURCES_REPLY}"
""".strip()
