# husky/__init__.py
"""Husky AI: the directory platform's retrieval-augmented assistant."""

__version__ = "1.0.0"
