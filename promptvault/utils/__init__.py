"""Retention and scheduling helpers for the backup engine."""
