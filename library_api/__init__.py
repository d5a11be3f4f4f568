"""Library management backend with REST and GraphQL interfaces."""

__version__ = "1.0.0"
