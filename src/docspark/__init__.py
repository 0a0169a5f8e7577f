"""
DocSpark document conversion service.

This package provides a FastAPI application that converts uploaded documents
between common formats. Routes live under `/api`, starting with `/api/health`.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
