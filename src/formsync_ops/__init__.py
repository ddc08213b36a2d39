"""Operational entry points for formsync: settings, logging, wiring and the CLI."""
