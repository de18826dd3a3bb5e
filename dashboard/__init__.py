"""Growthdesk dashboard backend."""
