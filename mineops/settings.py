# mineops/settings.py
import os

# Environment constants to avoid typos in comparisons
ENV_DEV = "dev"
ENV_PROD = "prod"

APP_ENV = os.getenv("APP_ENV", ENV_PROD).lower()

# --- HTTP server ---
HOST = os.getenv("MINEOPS_HOST", "127.0.0.1")
PORT = int(os.getenv("MINEOPS_PORT", "3000"))
SECRET_KEY = os.getenv("MINEOPS_SECRET_KEY", "dev-key-for-flask-session")

# --- Persistence ---
DATABASE_PATH = os.getenv("MINEOPS_DB", "mineops.db")

# --- Price source ---
COINGECKO_SIMPLE_PRICE_URL = os.getenv(
    "MINEOPS_PRICE_URL", "https://api.coingecko.com/api/v3/simple/price"
)
PRICE_REQUEST_TIMEOUT_S = float(os.getenv("MINEOPS_PRICE_TIMEOUT_S", "10"))
PRICE_USER_AGENT = "MineOps/0.1 (idle mining game server)"

# --- Simulation ---
AUDIT_LOG_MAX_ENTRIES = int(os.getenv("MINEOPS_AUDIT_MAX", "100"))
TICK_STATS_WINDOW = 100
ENGINE_RESTART_DELAY_S = 0.1
# Log one line every N ticks so the console is not flooded
TICK_LOG_EVERY = 10

LOG_LEVEL = os.getenv(
    "MINEOPS_LOG_LEVEL", "DEBUG" if APP_ENV == ENV_DEV else "INFO"
).upper()
