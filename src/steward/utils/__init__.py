"""Shared helpers for steward."""
