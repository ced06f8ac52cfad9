"""Embedding-based tool routing."""
