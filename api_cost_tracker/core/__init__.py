"""
Core modules for API Cost Tracker.

This package contains the provider catalog, pricing, aggregation,
budget alerting, health monitoring and optimization logic.
"""
