"""
Common utilities for the state backend.

Modules:
- errors: error taxonomy shared by every layer
- policy: capability-based access gate and token authenticator
- keyring: Fernet and KMS key management
- retry: bounded exponential backoff for transient failures
- config / logging_config: environment settings and structlog setup
- backend_client: HTTP client for the backend API
"""

__all__ = [
    "errors",
    "policy",
    "keyring",
    "retry",
    "config",
    "logging_config",
    "backend_client",
]
