"""Lifecycle events and the Wire bus."""
