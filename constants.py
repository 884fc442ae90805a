import os

STORE_BACKEND = os.getenv("STORE_BACKEND", "redis").lower()

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))

# REDIS_ADDR ("host:port") wins over REDIS_HOST/REDIS_PORT when set
REDIS_ADDR = os.getenv("REDIS_ADDR")
if REDIS_ADDR:
    _host, _, _port = REDIS_ADDR.rpartition(":")
    REDIS_HOST = _host or REDIS_HOST
    REDIS_PORT = int(_port) if _port else REDIS_PORT

DEFAULT_ROOM = os.getenv("DEFAULT_ROOM", "general")
DEFAULT_USER = os.getenv("DEFAULT_USER", "Anon")

UNDOABLE_KINDS = frozenset(
    kind.strip() for kind in os.getenv("UNDOABLE_KINDS", "chat").split(",") if kind.strip()
)

BRIDGE_POLL_TIMEOUT = float(os.getenv("BRIDGE_POLL_TIMEOUT", 1.0))
BRIDGE_RECONNECT_DELAY = float(os.getenv("BRIDGE_RECONNECT_DELAY", 1.0))

SESSION_QUEUE_SIZE = int(os.getenv("SESSION_QUEUE_SIZE", 1000))
