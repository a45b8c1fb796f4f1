import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

REDIS_URL = os.getenv("REDIS_URL", f"redis://{f':{REDIS_PASSWORD}@' if REDIS_PASSWORD else ''}{REDIS_HOST}:{REDIS_PORT}")

# "redis" or "memory"; redis falls back to memory when unreachable at startup
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "redis").lower()

ROOM_TTL_SECONDS = int(os.getenv("ROOM_TTL_SECONDS", 15 * 60))
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", 15 * 60))
MESSAGE_TTL_SECONDS = int(os.getenv("MESSAGE_TTL_SECONDS", 15 * 60))
# expired rooms stay readable (as "expired") this long before hard deletion
ROOM_GRACE_SECONDS = int(os.getenv("ROOM_GRACE_SECONDS", 60 * 60))
REAPER_INTERVAL_SECONDS = float(os.getenv("REAPER_INTERVAL_SECONDS", 5 * 60))

RATE_LIMIT_MESSAGES = int(os.getenv("RATE_LIMIT_MESSAGES", 30))
RATE_LIMIT_WINDOW_SECONDS = float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", 60))
# per-client REST attempt budgets, successful attempts included
CREATE_RATE_LIMIT = int(os.getenv("CREATE_RATE_LIMIT", 50))
CREATE_RATE_WINDOW_SECONDS = float(os.getenv("CREATE_RATE_WINDOW_SECONDS", 3600))
JOIN_RATE_LIMIT = int(os.getenv("JOIN_RATE_LIMIT", 20))
JOIN_RATE_WINDOW_SECONDS = float(os.getenv("JOIN_RATE_WINDOW_SECONDS", 900))

DEFAULT_MAX_USERS = int(os.getenv("DEFAULT_MAX_USERS", 10))
MAX_OCCUPANCY_LIMIT = 50
MAX_MESSAGE_LENGTH = int(os.getenv("MAX_MESSAGE_LENGTH", 16 * 1024))

IDLE_TIMEOUT_SECONDS = float(os.getenv("IDLE_TIMEOUT_SECONDS", 120))
OUTBOUND_QUEUE_SIZE = int(os.getenv("OUTBOUND_QUEUE_SIZE", 1000))

BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 12))
RETRY_BACKOFF_SECONDS = float(os.getenv("RETRY_BACKOFF_SECONDS", 0.1))

ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",") if o.strip()]

VERSION = "1.0.0"
