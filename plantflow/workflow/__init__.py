"""Workflow domain types, events and built-in definitions."""
