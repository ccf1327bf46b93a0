# ABOUTME: Utilities package initialization for the KOTS operator
# ABOUTME: Contains shared utilities for the HTTP client, throttling, and logging

"""
KOTS Operator Utilities Package

Shared utilities:
    - client.py: Control-plane HTTP client with retry logic
    - throttle.py: Per-app throttling of status pushes
    - logging.py: Structured logging with correlation IDs and audit trails
"""
