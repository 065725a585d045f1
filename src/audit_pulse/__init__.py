"""
audit-pulse: real-time progress tracking for website audits.

Follows a multi-stage audit job over a websocket notification channel,
and falls back to a deterministic simulated progression when the
channel is unavailable.
"""

__version__ = "0.1.0"
