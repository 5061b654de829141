"""Repositories for the remote store."""
