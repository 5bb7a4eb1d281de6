"""
alerts — Alert lifecycle and multi-channel notification.

Sub-modules:
    channels/       — Per-channel delivery backends (SMS, email, push, webhook)
    alert_store     — At-most-one-open-alert creation and status transitions
    dispatcher      — Fan-out to every (channel, recipient) pair with an audit row each
    orchestrator    — Detection → alert → notification flow and inbound operations
    models          — Data structures shared across the system
"""
