"""Conduit core utilities."""
