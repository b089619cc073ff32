"""Stateless helpers (token estimation)."""
