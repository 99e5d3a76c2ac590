"""
AuthCentral
Centralized authentication service: credentials, identity tokens, session
cookies, rate limiting and lifecycle events
"""
__version__ = "1.0.0"
