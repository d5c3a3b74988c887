"""Match expiry timers."""

from .heap_scheduler import HeapTimeoutScheduler

__all__ = ["HeapTimeoutScheduler"]
