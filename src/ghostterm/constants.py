"""
GhostTerm - Global Constants and Configuration Values

This module defines all constants used throughout the GhostTerm application.
All magic numbers and configuration defaults are centralized here.

Author: orpheus497
Version: 0.3.0
"""

# Version Information
VERSION = "0.3.0"
APP_NAME = "GhostTerm"
AUTHOR = "orpheus497"

# Network Constants
DEFAULT_BIND_HOST = "0.0.0.0"
DEFAULT_PORT = 0  # 0 = let the OS choose an ephemeral port
LOCALHOST = "127.0.0.1"
GOSSIP_ALPN = "ghostterm/gossip/0"

# Connection Timeouts (seconds)
CONNECTION_TIMEOUT = 30
HANDSHAKE_TIMEOUT = 10
SEND_TIMEOUT = 10  # a link that cannot take a frame for this long is dropped
LINK_QUEUE_SIZE = 256  # frames waiting per link before it is dropped

# Presence / Liveness (seconds)
HEARTBEAT_INTERVAL = 3.0
LIVENESS_TIMEOUT = 10.0  # roughly three missed heartbeats
PEER_EVICT_AFTER = 300.0  # LOST peers are evicted after 5 minutes

# Ticket Limits
TICKET_VERSION = 1
TICKET_PREFIX = "[Ghost:"
TICKET_SUFFIX = "]"
MAX_TICKET_LENGTH = 4096  # characters, checked before decoding
PEER_ID_SIZE = 32  # bytes
TOPIC_ID_SIZE = 32  # bytes
MAX_ADDRESS_HINTS = 16

# Message Limits
PROTOCOL_VERSION = 1
MAX_BODY_LENGTH = 4096  # characters
MAX_FRAME_SIZE = 64 * 1024  # bytes
MAX_DISPLAY_NAME_LENGTH = 32
DEFAULT_DISPLAY_NAME = "Ghost"
MAX_RETAINED_MESSAGES = 1000
MAX_NOTICES = 50

# Rate Limiting Constants (inbound frames per delivering peer)
RATE_LIMIT_FRAMES_PER_SECOND = 20.0
RATE_LIMIT_FRAMES_BURST = 40
RATE_LIMIT_CONNECTIONS_PER_MINUTE = 30
RATE_LIMIT_CLEANUP_INTERVAL = 300  # seconds

# UI Configuration
SIDEBAR_WIDTH = 25
INPUT_HEIGHT = 3
STATUS_HEIGHT = 1
TIME_FORMAT = "%H:%M"

# Configuration
CONFIG_DIR = "~/.config/ghostterm"
CONFIG_FILENAME = "config.toml"
ENV_PREFIX = "GHOSTTERM"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
