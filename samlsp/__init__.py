"""SAML 2.0 Service Provider engine."""

__version__ = "0.1.0"
