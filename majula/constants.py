"""Timing and behaviour constants shared across the node."""

# Background task periods, in seconds.
COST_CHECK_TIME_PERIOD: float = 1.0
BUILD_UP_TIME_PERIOD: float = 0.5
HEARTBEAT_TIME_PERIOD: float = 1.0
RECEIVED_MESSAGE_CLEANUP_PERIOD: float = 10.0
RETRY_LOOP_PERIOD: float = 1.0
SUBSCRIBE_FLOOD_TICKET: float = 1.0
DEFAULT_RPC_OVERTIME: float = 6.0
RPC_FLOOD_TICKET: float = 10.0
RPC_CACHE_CLEAN_TICKET: float = 60.0

DEBUG: bool = False