"""Hybrid retrieval engine for the Gruenerator document corpora."""

__version__ = "0.4.0"
