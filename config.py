"""Settings.

Everything is read once from the environment, with defaults that work for local runs.
"""
import os

JOLPICA_BASE = os.getenv("JOLPICA_BASE", "https://api.jolpi.ca/ergast/f1")
HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "30"))
PAGE_SIZE = int(os.getenv("PAGE_SIZE", "100"))

# Race time between two sampled frames.
DEFAULT_INTERVAL_MS = int(os.getenv("DEFAULT_INTERVAL_MS", "500"))
# Upper bound on frames sent over HTTP; 0 disables compression.
MAX_FRAMES = int(os.getenv("MAX_FRAMES", "0"))

# Playback ticks per second for the websocket replay.
REFRESH_HZ = float(os.getenv("REFRESH_HZ", "30"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
