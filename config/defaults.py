from __future__ import annotations

# Gemini (OpenAI-compatible endpoint)
DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"
DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"
DEFAULT_EMBEDDING_MODEL = "text-embedding-004"
DEFAULT_EMBEDDING_DIM = 768
DEFAULT_GENERATION_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_OUTPUT_TOKENS = 1000
DEFAULT_TEMPERATURE = 0.7

# Conversation memory
DEFAULT_HISTORY_SCOPE = "user_channel"  # user | channel | user_channel
HISTORY_SCOPES = {"user", "channel", "user_channel"}
DEFAULT_HISTORY_MAX_TURNS = 20

# Orchestrator
DEFAULT_COOLDOWN_SECONDS = 10.0

# Retrieval
DEFAULT_RETRIEVAL_LIMIT = 10
DEFAULT_RETRIEVAL_WINDOW = 3
DEFAULT_RETRIEVAL_LINE_CHARS = 400

# Prompt
DEFAULT_PROMPT_MAX_CHARS = 12000
DEFAULT_SERVER_CONTEXT_DAYS = 7
DEFAULT_SERVER_CONTEXT_USERS = 50

# Backfill
DEFAULT_BACKFILL_LIMIT = 2000
DEFAULT_BACKFILL_BATCH_SIZE = 50
DEFAULT_BACKFILL_PAUSE_SECONDS = 2.0

# Discord
DISCORD_MAX_MESSAGE_LEN = 2000
DEFAULT_ALLOWED_CHANNEL_IDS: set[int] = set()

MESSAGE_TYPES = {"normal", "system", "backfill"}
