"""Operational helper scripts."""
