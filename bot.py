import os
import asyncio
import sqlite3
import discord
from discord.ext import commands
from openai import OpenAI
from config.defaults import DEFAULT_ALLOWED_CHANNEL_IDS
from config.defaults import DEFAULT_BACKFILL_BATCH_SIZE
from config.defaults import DEFAULT_BACKFILL_LIMIT
from config.defaults import DEFAULT_BACKFILL_PAUSE_SECONDS
from config.defaults import DEFAULT_COOLDOWN_SECONDS
from config.defaults import DEFAULT_EMBEDDING_DIM
from config.defaults import DEFAULT_EMBEDDING_MODEL
from config.defaults import DEFAULT_GEMINI_BASE_URL
from config.defaults import DEFAULT_GEMINI_MODEL
from config.defaults import DEFAULT_GENERATION_TIMEOUT_SECONDS
from config.defaults import DEFAULT_HISTORY_MAX_TURNS
from config.defaults import DEFAULT_HISTORY_SCOPE
from config.defaults import DEFAULT_MAX_OUTPUT_TOKENS
from config.defaults import DEFAULT_PROMPT_MAX_CHARS
from config.defaults import DEFAULT_RETRIEVAL_LIMIT
from config.defaults import DEFAULT_RETRIEVAL_WINDOW
from config.defaults import DEFAULT_TEMPERATURE
from config.defaults import HISTORY_SCOPES
from controller.context import (
    parse_channel_id_token,
    parse_id_set,
    parse_str_set,
    resolve_allowed_channel_ids,
    user_matches_owner,
)
from controller.cooldown import CooldownTracker
from controller.orchestrator import ChatOrchestrator
from controller.persona import load_persona
from db.migrate import list_schema_migrations_sync
from db.migrate import open_db
from ingestion.store import get_backfill_done_sync as get_backfill_done_store
from ingestion.store import list_channel_state_sync as list_channel_state_store
from ingestion.store import reset_all_backfill_done_sync as reset_all_backfill_done_store
from ingestion.store import reset_backfill_done_sync as reset_backfill_done_store
from ingestion.store import set_backfill_done_sync as set_backfill_done_store
from memory.conversation import ConversationMemory
from messages.service import MessageService
from misc.discord_text import send_chunked
from misc.runtime_wiring import wire_bot_runtime
from providers.embedding import OpenAIEmbeddingProvider
from providers.generation import OpenAIGenerationClient

# =========================
# ENV
# =========================
DISCORD_TOKEN = os.getenv("DISCORD_TOKEN")
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")

if not DISCORD_TOKEN:
    raise RuntimeError("Missing DISCORD_TOKEN env var")
if not GEMINI_API_KEY:
    raise RuntimeError("Missing GEMINI_API_KEY env var")

GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL", DEFAULT_GEMINI_BASE_URL).strip() or DEFAULT_GEMINI_BASE_URL
GEMINI_MODEL = os.getenv("GEMINI_MODEL", DEFAULT_GEMINI_MODEL).strip() or DEFAULT_GEMINI_MODEL
EMBEDDING_MODEL = os.getenv("GEMINI_EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL).strip() or DEFAULT_EMBEDDING_MODEL


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)).strip())
    except ValueError:
        print(f"[CFG] invalid {name}; falling back to {default}")
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)).strip())
    except ValueError:
        print(f"[CFG] invalid {name}; falling back to {default}")
        return default


EMBEDDING_DIM = _env_int("GLUE_EMBEDDING_DIM", DEFAULT_EMBEDDING_DIM)

# =========================
# CHAT CONFIG
# =========================
HISTORY_SCOPE = os.getenv("GLUE_HISTORY_SCOPE", DEFAULT_HISTORY_SCOPE).strip().lower()
if HISTORY_SCOPE not in HISTORY_SCOPES:
    print(f"[CFG] invalid GLUE_HISTORY_SCOPE={HISTORY_SCOPE!r}; falling back to {DEFAULT_HISTORY_SCOPE!r}")
    HISTORY_SCOPE = DEFAULT_HISTORY_SCOPE
HISTORY_MAX_TURNS = max(1, _env_int("GLUE_HISTORY_MAX_TURNS", DEFAULT_HISTORY_MAX_TURNS))
COOLDOWN_SECONDS = max(0.0, _env_float("GLUE_COOLDOWN_SECONDS", DEFAULT_COOLDOWN_SECONDS))
RETRIEVAL_LIMIT = max(0, _env_int("GLUE_RETRIEVAL_LIMIT", DEFAULT_RETRIEVAL_LIMIT))
RETRIEVAL_WINDOW = max(0, _env_int("GLUE_RETRIEVAL_WINDOW", DEFAULT_RETRIEVAL_WINDOW))
PROMPT_MAX_CHARS = max(1000, _env_int("GLUE_PROMPT_MAX_CHARS", DEFAULT_PROMPT_MAX_CHARS))

repo_root = os.path.dirname(os.path.abspath(__file__))
PERSONA_PATH = os.getenv("GLUE_PERSONA_PATH", os.path.join(repo_root, "config", "persona.yml"))
PERSONA, persona_warning = load_persona(PERSONA_PATH)
if persona_warning:
    print(f"[CFG] {persona_warning}")

print(
    f"[CFG] model={GEMINI_MODEL} embedding_model={EMBEDDING_MODEL} dim={EMBEDDING_DIM} "
    f"history_scope={HISTORY_SCOPE} max_turns={HISTORY_MAX_TURNS} cooldown={COOLDOWN_SECONDS}s "
    f"retrieval_limit={RETRIEVAL_LIMIT} window={RETRIEVAL_WINDOW} prompt_max_chars={PROMPT_MAX_CHARS} "
    f"persona={PERSONA.version}"
)

# =========================
# ALLOWED CHANNELS + OWNERS
# =========================
ALLOWED_CHANNEL_IDS = resolve_allowed_channel_ids(DEFAULT_ALLOWED_CHANNEL_IDS)
OWNER_USER_IDS = parse_id_set(os.getenv("GLUE_OWNER_USER_IDS"))
OWNER_USERNAMES = parse_str_set(os.getenv("GLUE_OWNER_USERNAMES"))

print(
    f"[CFG] allowed_channels={len(ALLOWED_CHANNEL_IDS) or 'all'} "
    f"owner_ids={len(OWNER_USER_IDS)} owner_names={len(OWNER_USERNAMES)}"
)


def user_is_owner(user: discord.abc.User) -> bool:
    return user_matches_owner(user, OWNER_USER_IDS, OWNER_USERNAMES)


# =========================
# SQLITE
# =========================
DB_PATH = os.getenv("GLUE_DB_PATH", "glue_messages.db")
db_conn: sqlite3.Connection = open_db(DB_PATH, os.path.join(repo_root, "migrations"))
db_lock = asyncio.Lock()

# =========================
# PROVIDERS + SERVICES
# =========================
client = OpenAI(api_key=GEMINI_API_KEY, base_url=GEMINI_BASE_URL)
embedder = OpenAIEmbeddingProvider(client, EMBEDDING_MODEL, dimensions=EMBEDDING_DIM)
generator = OpenAIGenerationClient(
    client,
    GEMINI_MODEL,
    timeout_seconds=DEFAULT_GENERATION_TIMEOUT_SECONDS,
    max_output_tokens=DEFAULT_MAX_OUTPUT_TOKENS,
    temperature=DEFAULT_TEMPERATURE,
)

message_service = MessageService(db_lock=db_lock, db_conn=db_conn, embedder=embedder)
conversation_memory = ConversationMemory(max_turns=HISTORY_MAX_TURNS)
orchestrator = ChatOrchestrator(
    message_service=message_service,
    embedder=embedder,
    generator=generator,
    memory=conversation_memory,
    cooldown=CooldownTracker(COOLDOWN_SECONDS),
    persona=PERSONA,
    retrieval_limit=RETRIEVAL_LIMIT,
    retrieval_window=RETRIEVAL_WINDOW,
    prompt_max_chars=PROMPT_MAX_CHARS,
)

# =========================
# BACKFILL STATE
# =========================
BACKFILL_LIMIT = _env_int("GLUE_BACKFILL_LIMIT", DEFAULT_BACKFILL_LIMIT)  # per channel, first boot
BACKFILL_BATCH_SIZE = max(1, _env_int("GLUE_BACKFILL_BATCH_SIZE", DEFAULT_BACKFILL_BATCH_SIZE))
BACKFILL_PAUSE_SECONDS = max(0.0, _env_float("GLUE_BACKFILL_PAUSE_SECONDS", DEFAULT_BACKFILL_PAUSE_SECONDS))
BOOTSTRAP_CHANNEL_RESET = os.getenv("GLUE_BOOTSTRAP_CHANNEL_RESET", "0").strip() == "1"
BOOTSTRAP_CHANNEL_RESET_ALL = os.getenv("GLUE_BOOTSTRAP_CHANNEL_RESET_ALL", "0").strip() == "1"


async def reset_backfill_done(channel_id: int) -> None:
    async with db_lock:
        await asyncio.to_thread(reset_backfill_done_store, db_conn, int(channel_id))


async def reset_all_backfill_done() -> int:
    async with db_lock:
        return await asyncio.to_thread(reset_all_backfill_done_store, db_conn)


async def is_backfill_done(channel_id: int) -> bool:
    async with db_lock:
        done, _last = await asyncio.to_thread(get_backfill_done_store, db_conn, channel_id)
    return bool(done)


async def mark_backfill_done(channel_id: int, backfilled_count: int = 0) -> None:
    iso_utc = discord.utils.utcnow().isoformat()
    async with db_lock:
        await asyncio.to_thread(set_backfill_done_store, db_conn, channel_id, iso_utc, backfilled_count)


# =========================
# DISCORD BOT
# =========================
intents = discord.Intents.default()
intents.message_content = True
intents.members = False

bot = commands.Bot(command_prefix="!", intents=intents)

wire_bot_runtime(
    bot,
    allowed_channel_ids=ALLOWED_CHANNEL_IDS,
    user_is_owner=user_is_owner,
    db_lock=db_lock,
    db_conn=db_conn,
    send_chunked=send_chunked,
    message_service=message_service,
    orchestrator=orchestrator,
    history_scope=HISTORY_SCOPE,
    list_schema_migrations_sync=list_schema_migrations_sync,
    list_channel_state_sync=list_channel_state_store,
    reset_backfill_done_sync=reset_backfill_done_store,
    reset_all_backfill_done_sync=reset_all_backfill_done_store,
    parse_channel_id_token=parse_channel_id_token,
    bootstrap_channel_reset_all=BOOTSTRAP_CHANNEL_RESET_ALL,
    bootstrap_channel_reset=BOOTSTRAP_CHANNEL_RESET,
    reset_all_backfill_done_func=reset_all_backfill_done,
    reset_backfill_done_func=reset_backfill_done,
    is_backfill_done_func=is_backfill_done,
    mark_backfill_done_func=mark_backfill_done,
    backfill_limit=BACKFILL_LIMIT,
    backfill_batch_size=BACKFILL_BATCH_SIZE,
    backfill_pause_seconds=BACKFILL_PAUSE_SECONDS,
    bot_name=PERSONA.name or "Glue",
)


bot.run(DISCORD_TOKEN)
