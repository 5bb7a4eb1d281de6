"""
monitoring — Detection of users in danger.

Sub-modules:
    safety_scanner  — inactivity and danger-zone signals, sweeps and ping checks
    scheduler       — fixed-interval sweep runner with a cancellation token
"""
