"""Data models for notestore."""
