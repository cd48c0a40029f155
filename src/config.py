"""Configuration management for the on-chain Trade Monitor."""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent

# Data directory
DATA_DIR = PROJECT_ROOT / "data"
LOGS_DIR = PROJECT_ROOT / "logs"

# Ensure directories exist
DATA_DIR.mkdir(parents=True, exist_ok=True)
LOGS_DIR.mkdir(parents=True, exist_ok=True)


def _csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


# =============================================================================
# CHAIN
# =============================================================================

RPC_URL = os.getenv("RPC_URL", "https://rpc.testnet.x1.xyz")
RPC_WS_URL = os.getenv(
    "RPC_WS_URL",
    RPC_URL.replace("https://", "wss://").replace("http://", "ws://"),
)

# Programs whose logs are monitored (one subscription each)
PROGRAM_IDS = _csv(os.getenv("PROGRAM_IDS", "EeQNdiGDUVj4jzPMBkx59J45p1y93JpKByTWifWtuxjF"))

# PDA seeds used to locate a session wallet's position account
AMM_SEED = os.getenv("AMM_SEED", "amm_btc_v6").encode()
POSITION_SEED = os.getenv("POSITION_SEED", "pos").encode()

# Fee payers whose transactions are ignored (keeper / deployer)
EXCLUDED_WALLETS = _csv(
    os.getenv("EXCLUDED_WALLETS", "AivknDqDUqnvyYVmDViiB2bEHKyUK5HcX91gWL2zgTZ4")
)

# Transaction lookup retry budget (fee payer resolution)
TX_LOOKUP_MAX_ATTEMPTS = int(os.getenv("TX_LOOKUP_MAX_ATTEMPTS", "5"))
TX_LOOKUP_MIN_WAIT = float(os.getenv("TX_LOOKUP_MIN_WAIT", "0.5"))  # seconds
TX_LOOKUP_MAX_WAIT = float(os.getenv("TX_LOOKUP_MAX_WAIT", "4.0"))  # seconds

# =============================================================================
# BROADCAST
# =============================================================================

BROADCAST_HOST = os.getenv("BROADCAST_HOST", "0.0.0.0")
BROADCAST_PORT = int(os.getenv("BROADCAST_PORT", "3435"))

# Ring buffer sizes and how much of each is replayed on connect
MAX_TRADES = int(os.getenv("MAX_TRADES", "100"))
MAX_CHAT_MESSAGES = int(os.getenv("MAX_CHAT_MESSAGES", "100"))
REPLAY_SIZE = int(os.getenv("REPLAY_SIZE", "50"))

# Chat rate limit: max messages per identity within the sliding window
CHAT_RATE_LIMIT_MAX = int(os.getenv("CHAT_RATE_LIMIT_MAX", "60"))
CHAT_RATE_LIMIT_WINDOW = float(os.getenv("CHAT_RATE_LIMIT_WINDOW", "60"))  # seconds

CHAT_ARCHIVE_PATH = PROJECT_ROOT / os.getenv("CHAT_ARCHIVE_PATH", "data/chat_messages.json")

# =============================================================================
# PERSISTENCE
# =============================================================================

PERSISTENCE_API_URL = os.getenv("PERSISTENCE_API_URL", "http://localhost:3434")
SINK_TIMEOUT = float(os.getenv("SINK_TIMEOUT", "5.0"))
SINK_QUEUE_SIZE = int(os.getenv("SINK_QUEUE_SIZE", "1000"))

POINTS_DB_PATH = PROJECT_ROOT / os.getenv("POINTS_DB_PATH", "data/points.db")
TRADE_HISTORY_DB_PATH = PROJECT_ROOT / os.getenv("TRADE_HISTORY_DB_PATH", "data/price_history.db")
