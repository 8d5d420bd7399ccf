"""Service layer for notestore."""
