"""Organization admin backend: authentication, sessions and access control."""

__version__ = "1.0.0"
