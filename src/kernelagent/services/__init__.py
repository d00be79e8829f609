"""Service layer helpers (settings, progress, service facade)."""
