"""
GhostTerm - Rate Limiting Implementation

This module implements rate limiting using the token bucket algorithm so
that a single chatty or hostile peer cannot flood the engine loop. Inbound
frames are limited per author and per delivering link; the direct transport
also limits incoming connection attempts per remote address.

All callers run on the engine's event loop, so no locking is needed.

Author: orpheus497
Version: 0.3.0
"""

import logging
import time
from typing import Callable, Dict

from .constants import (
    RATE_LIMIT_CLEANUP_INTERVAL,
    RATE_LIMIT_CONNECTIONS_PER_MINUTE,
    RATE_LIMIT_FRAMES_BURST,
    RATE_LIMIT_FRAMES_PER_SECOND,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class TokenBucket:
    """Token bucket implementation for rate limiting.

    Tokens are added at a constant rate up to ``capacity`` and consumed by
    operations, which allows short bursts while holding a long-term rate.

    Attributes:
        capacity: Maximum number of tokens in bucket
        refill_rate: Tokens added per second
        tokens: Current number of tokens
        last_refill: Clock reading at last refill
    """

    def __init__(self, capacity: int, refill_rate: float, clock: Clock = time.monotonic):
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.clock = clock
        self.tokens = float(capacity)
        self.last_refill = clock()

    def consume(self, tokens: int = 1) -> bool:
        """Attempt to consume tokens from the bucket.

        Returns:
            True if tokens were consumed, False if insufficient tokens
        """
        now = self.clock()
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def reset(self) -> None:
        """Reset the bucket to full capacity."""
        self.tokens = float(self.capacity)
        self.last_refill = self.clock()


class RateLimiter:
    """Per-key token buckets for inbound frames and connection attempts.

    Keys are peer identifiers for frames and remote IP addresses for
    connections.
    """

    def __init__(
        self,
        frames_per_second: float = RATE_LIMIT_FRAMES_PER_SECOND,
        frames_burst: int = RATE_LIMIT_FRAMES_BURST,
        connections_per_minute: int = RATE_LIMIT_CONNECTIONS_PER_MINUTE,
        clock: Clock = time.monotonic,
    ):
        self.frames_per_second = frames_per_second
        self.frames_burst = frames_burst
        self.connections_per_minute = connections_per_minute
        self.clock = clock

        self.frame_buckets: Dict[str, TokenBucket] = {}
        self.connection_buckets: Dict[str, TokenBucket] = {}
        self.dropped: Dict[str, int] = {}
        self.last_cleanup = clock()

        logger.debug(
            f"Rate limiter initialized: {frames_per_second} frames/s "
            f"(burst {frames_burst}), {connections_per_minute} conn/min"
        )

    def check_frame_rate(self, peer_id: str) -> bool:
        """Check if another frame from ``peer_id`` may be processed."""
        bucket = self.frame_buckets.get(peer_id)
        if bucket is None:
            bucket = TokenBucket(self.frames_burst, self.frames_per_second, self.clock)
            self.frame_buckets[peer_id] = bucket

        if bucket.consume():
            return True

        count = self.dropped.get(peer_id, 0) + 1
        self.dropped[peer_id] = count
        # Log the first drop and then every hundredth
        if count % 100 == 1:
            logger.warning(f"Frame rate limit exceeded for peer {peer_id[:8]} ({count} dropped)")
        return False

    def check_connection_rate(self, address: str) -> bool:
        """Check if a new connection from ``address`` may be accepted."""
        bucket = self.connection_buckets.get(address)
        if bucket is None:
            bucket = TokenBucket(
                self.connections_per_minute, self.connections_per_minute / 60.0, self.clock
            )
            self.connection_buckets[address] = bucket

        if bucket.consume():
            return True

        logger.warning(f"Connection rate limit exceeded for: {address}")
        return False

    def forget(self, key: str) -> None:
        """Drop all state kept for a peer or address."""
        self.frame_buckets.pop(key, None)
        self.connection_buckets.pop(key, None)
        self.dropped.pop(key, None)

    def cleanup(self, stale_after: float = 3600.0) -> None:
        """Remove buckets with no activity for ``stale_after`` seconds.

        Runs at most once per cleanup interval.
        """
        now = self.clock()
        if now - self.last_cleanup < RATE_LIMIT_CLEANUP_INTERVAL:
            return

        for buckets in (self.frame_buckets, self.connection_buckets):
            stale = [key for key, bucket in buckets.items() if now - bucket.last_refill > stale_after]
            for key in stale:
                del buckets[key]
                self.dropped.pop(key, None)
            if stale:
                logger.debug(f"Cleaned up {len(stale)} idle rate limit buckets")

        self.last_cleanup = now

    def clear(self) -> None:
        self.frame_buckets.clear()
        self.connection_buckets.clear()
        self.dropped.clear()

    def get_stats(self) -> Dict[str, int]:
        """Get current rate limiter statistics."""
        return {
            "frame_buckets": len(self.frame_buckets),
            "connection_buckets": len(self.connection_buckets),
            "dropped_frames": sum(self.dropped.values()),
        }
