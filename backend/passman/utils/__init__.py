"""Shared utilities for the PassMan core."""
