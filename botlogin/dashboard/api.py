# Control API - FastAPI Server
# Settings and connect/disconnect controls for the bot gateway session

"""
Control API Module

Provides REST endpoints for:
- Connection status and recent operator notices
- Reading and writing the two persisted settings (token, intents)
- Connect / disconnect requests

The API runs in its own thread (uvicorn). It never calls the gateway
client directly: connect/disconnect requests are queued and drained by the
main loop, status is pushed in by the main loop.
"""

import hmac
import queue
import threading
import time
from collections import defaultdict
from copy import deepcopy
from typing import List, Optional, Union

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel

from ..storage.config_store import ConfigStore, coerce_intents
from ..utils.helpers import mask_token, strip_token_prefix
from ..utils.logger import setup_logger

logger = setup_logger("ControlAPI", "INFO")

# Bearer token for the API (set by main.py via configure(); empty = no auth)
API_TOKEN = ""

# Settings store reference (set by main.py via configure())
_config_store: Optional[ConfigStore] = None

# Thread-safe lock for status state shared with the main loop
state_lock = threading.Lock()

# Thread-safe queue for control requests from API -> main loop
# Items are dicts: {"action": "connect"|"disconnect"}
_command_queue: queue.Queue = queue.Queue()

# Global state (updated by main.py)
system_state = {
    "status": {
        "state": "idle",
        "connected": False,
        "user": None,
        "reconnect_attempts": 0,
    },
    "notices": [],
    "updated_at": None,
}

def configure(config_store: ConfigStore, api_token: str = ""):
    """Attach the settings store and API token (called from main.py)."""
    global _config_store, API_TOKEN
    _config_store = config_store
    API_TOKEN = api_token or ""
    if not API_TOKEN:
        logger.warning("No API token configured - control API auth is DISABLED")

async def verify_token(authorization: str = Header(None)):
    """Simple Bearer token auth with constant-time comparison."""
    if not API_TOKEN:
        return True  # Skip auth if token not set in config
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing token")
    provided = authorization.replace("Bearer ", "", 1)
    if not hmac.compare_digest(provided, API_TOKEN):
        raise HTTPException(status_code=403, detail="Invalid token")
    return True

# Rate limiting
_rate_limit_store: dict = defaultdict(list)
_RATE_LIMIT = 30  # requests per minute

async def check_rate_limit(request: Request):
    client_ip = request.client.host if request.client else "unknown"
    now = time.time()
    entries = [t for t in _rate_limit_store[client_ip] if now - t < 60]
    if len(entries) >= _RATE_LIMIT:
        _rate_limit_store[client_ip] = entries
        raise HTTPException(status_code=429, detail="Too many requests")
    entries.append(now)
    _rate_limit_store[client_ip] = entries

def _require_store() -> ConfigStore:
    if _config_store is None:
        raise HTTPException(status_code=503, detail="Settings store not ready")
    return _config_store

# Create FastAPI app
app = FastAPI(
    title="BotLogin Control API",
    description="Settings and connection control for the bot gateway session",
    version="1.0.0"
)

# Pydantic models for API requests
class SettingsRequest(BaseModel):
    """Request model for updating settings"""
    bot_token: Optional[str] = None
    intents: Optional[Union[int, str]] = None

# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    with state_lock:
        connected = system_state["status"].get("connected", False)
    return {"status": "ok", "connected": connected}

@app.get("/api/status")
async def get_status(_auth=Depends(verify_token), _rl=Depends(check_rate_limit)):
    """Connection status and recent notices (thread-safe copy)."""
    with state_lock:
        return deepcopy(system_state)

@app.get("/api/settings")
async def get_settings(_auth=Depends(verify_token), _rl=Depends(check_rate_limit)):
    """Current settings with the token masked."""
    store = _require_store()
    return {
        "bot_token": mask_token(store.bot_token),
        "has_token": bool(store.bot_token),
        "intents": store.intents,
    }

@app.put("/api/settings")
async def update_settings(
    request: SettingsRequest,
    _auth=Depends(verify_token),
    _rl=Depends(check_rate_limit)
):
    """Update token and/or intents. Takes effect on the next (re)connect."""
    store = _require_store()
    updates = {}

    if request.bot_token is not None:
        if not strip_token_prefix(request.bot_token):
            raise HTTPException(status_code=400, detail="Please enter a bot token.")
        updates["bot_token"] = request.bot_token

    if request.intents is not None:
        updates["intents"] = coerce_intents(request.intents)

    if updates:
        store.update(**updates)
        logger.info(f"Settings updated: {', '.join(sorted(updates))}")

    return {
        "success": True,
        "bot_token": mask_token(store.bot_token),
        "intents": store.intents,
    }

@app.post("/api/connect", status_code=202)
async def request_connect(_auth=Depends(verify_token), _rl=Depends(check_rate_limit)):
    """Queue a connect request for the main loop."""
    store = _require_store()
    if not store.bot_token:
        raise HTTPException(status_code=400, detail="Please enter a bot token.")
    _command_queue.put({"action": "connect"})
    return {"success": True, "queued": "connect"}

@app.post("/api/disconnect", status_code=202)
async def request_disconnect(_auth=Depends(verify_token), _rl=Depends(check_rate_limit)):
    """Queue a disconnect request for the main loop."""
    _command_queue.put({"action": "disconnect"})
    return {"success": True, "queued": "disconnect"}

# ============================================================================
# FUNCTIONS CALLED FROM MAIN.PY
# ============================================================================

def update_status(status: dict, notices: Optional[List[dict]] = None):
    """Publish connection status (thread-safe)."""
    with state_lock:
        system_state["status"] = deepcopy(status)
        if notices is not None:
            system_state["notices"] = deepcopy(notices)
        system_state["updated_at"] = time.time()

def get_pending_commands() -> List[dict]:
    """Drain all pending control requests."""
    commands = []
    while True:
        try:
            commands.append(_command_queue.get_nowait())
        except queue.Empty:
            break
    return commands
