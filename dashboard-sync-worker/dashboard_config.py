"""
Dashboard Sync Worker - Configuration

All tunables are read once from the environment (optionally from a
.env.local file next to the repository root) and exposed as module-level
constants.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment
ENV_PATH = Path(os.getenv('DASHBOARD_ENV_FILE', str(Path(__file__).parent.parent / '.env.local')))
load_dotenv(ENV_PATH)

# ═══════════════════════════════════════════════════════════════════════════════
# REMOTE API
# ═══════════════════════════════════════════════════════════════════════════════

API_BASE_URL = os.getenv('BOTPRESS_API_URL', 'https://api.botpress.cloud')
REQUEST_TIMEOUT = float(os.getenv('BOTPRESS_REQUEST_TIMEOUT', '30'))  # seconds per call

# Credentials (names only - values live outside this process)
TOKEN_ENV = 'BOTPRESS_TOKEN'
WORKSPACE_ID_ENV = 'BOTPRESS_WORKSPACE_ID'
BOT_ID_ENV = 'BOTPRESS_BOT_ID'

# ═══════════════════════════════════════════════════════════════════════════════
# SYNC SETTINGS
# ═══════════════════════════════════════════════════════════════════════════════

SUPPORTED_CHANNEL = os.getenv('DASHBOARD_CHANNEL', 'whatsapp')
HIDE_EMPTY_CONVERSATIONS = os.getenv('DASHBOARD_HIDE_EMPTY', '1') not in ('0', 'false', 'no')

POLL_INTERVAL = float(os.getenv('POLL_INTERVAL', '15'))                    # Conversation polling
MESSAGE_POLL_INTERVAL = float(os.getenv('MESSAGE_POLL_INTERVAL', '20'))    # Open conversation polling

INITIAL_LOAD_RETRIES = int(os.getenv('INITIAL_LOAD_RETRIES', '5'))  # Attempts, not re-tries
RETRY_BASE_DELAY = float(os.getenv('RETRY_BASE_DELAY', '1'))        # 1s, 2s, 4s, ...
RETRY_MAX_DELAY = 30                                                 # Cap per wait

# Viewport
NEAR_BOTTOM_THRESHOLD = int(os.getenv('NEAR_BOTTOM_THRESHOLD', '50'))  # pixels

# Labels shown to the operator
UNKNOWN_PARTICIPANT = 'unknown participant'
NO_MORE_CONVERSATIONS = 'no more conversations'
START_OF_CONVERSATION = 'start of the conversation'
DEFAULT_SENDER_ID = 'user'  # Used when the bot's own user id is not known yet

# Notices
NOTICE_TTL = float(os.getenv('NOTICE_TTL', '4'))  # seconds before a transient notice expires
MAX_NOTICES = 50
MAX_ERRORS = 20  # Errors kept for status reporting

# ═══════════════════════════════════════════════════════════════════════════════
# WORKER
# ═══════════════════════════════════════════════════════════════════════════════

PORT = int(os.getenv('PORT', 8080))
LOG_PATH = os.getenv('LOG_PATH', '')  # Empty disables the JSON-lines log file
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')  # Console threshold
