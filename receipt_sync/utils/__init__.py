"""Utility helpers for the receipt sync client."""
