"""LibSync - Services Package

This package contains the external collaborators the circulation core uses:
- Student directory
- Notification delivery (logging and HTTP webhook)
"""
