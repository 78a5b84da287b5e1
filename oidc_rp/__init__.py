"""
OIDC relying-party middleware for server-side FastAPI applications.
"""

__version__ = "1.0.0"
