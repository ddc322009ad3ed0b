"""Persistence layer: node and project repositories."""
