"""Cross-cutting utilities for the orchestration layer.

Modules:
    logging: structlog configuration and logger factory.
    alerts: Discord webhook alerts for operators.
"""
