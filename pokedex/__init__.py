"""Pokedex catalog service: relational storage, caching and a thin HTTP layer."""

__version__ = "0.1.0"
