"""Application-wide configuration constants."""

import os

# --- Identity ---
APP_ID = "ryflow"
APP_VERSION = "1.0.0"
DISPLAY_NAME = os.environ.get("RYFLOW_DISPLAY_NAME", "Host")

# --- Networking ---
API_HOST = os.environ.get("RYFLOW_HOST", "0.0.0.0")
API_PORT = int(os.environ.get("PORT", "3001"))
CORS_ORIGINS = [
    "http://localhost:5173", "http://127.0.0.1:5173",
]

# --- Discovery (mDNS / DNS-SD) ---
DISCOVERY_ENABLED = os.environ.get("RYFLOW_DISCOVERY", "1") != "0"
SERVICE_TYPE = "_http._tcp.local."
SERVICE_NAME_PREFIX = "RyFlow-"
PEER_TIMEOUT = 60  # seconds before a silent peer is dropped
SWEEP_INTERVAL = 30  # seconds between staleness sweeps
RESOLVE_TIMEOUT_MS = 3000
REFRESH_WAIT = 1.0  # seconds to collect answers to sweep-time queries
