"""
PassMan authorization core.

Permission catalog, identity store, session tokens, two-factor
authentication, vault sharing and the audit trail that gate every
password-manager operation.
"""

__version__ = "0.4.0"
