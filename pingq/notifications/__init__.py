"""Notification records, normalization, storage and fan-out."""
