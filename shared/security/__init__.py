"""
Security utilities for the order plane.

This module provides:
- Credential handle resolution (secrets never live in config or sessions)
"""

from .credentials import CredentialStore, CredentialNotFound, env_var_for

__all__ = [
    'CredentialStore',
    'CredentialNotFound',
    'env_var_for',
]
