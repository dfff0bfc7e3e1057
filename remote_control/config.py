"""
Configuration constants for the remote control link.

Every value can be overridden with an RC_* environment variable.
"""

import os

# ---- Relay ----
RELAY_HOST = os.environ.get("RC_RELAY_HOST", "0.0.0.0")
RELAY_PORT = int(os.environ.get("RC_RELAY_PORT", "8765"))
RELAY_URL = os.environ.get("RC_RELAY_URL", f"ws://localhost:{RELAY_PORT}")

# ---- WebRTC ----
STUN_URL = os.environ.get("RC_STUN_URL", "stun:stun.l.google.com:19302")
DATA_CHANNEL_LABEL = os.environ.get("RC_DATA_CHANNEL_LABEL", "data-channel")

# ---- Pages ----
SITE_URL = os.environ.get("RC_SITE_URL", "http://localhost:3000")
CONTROL_PATH = "/experiments/21.remote-control.js"
CONTROL_PARAM = os.environ.get("RC_CONTROL_PARAM", "control")

# ---- Serial ----
SERIAL_BAUD = int(os.environ.get("RC_SERIAL_BAUD", "115200"))
SERIAL_POLL_INTERVAL = 0.001

# ---- Logging ----
LOG_LEVEL = os.environ.get("RC_LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
