"""Workflow engine services: resolver, variance, ledger, scheduler, engine."""
