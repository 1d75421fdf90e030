"""
SDK for API Cost Tracker.

Helpers that meter third-party API calls from collector code.
"""

from .collector import TrackedCall, track_call

__all__ = ["TrackedCall", "track_call"]
