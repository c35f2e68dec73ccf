"""Shared helpers: logging, audio conversion and timestamps."""
