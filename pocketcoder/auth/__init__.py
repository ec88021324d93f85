"""Credential acquisition flows."""
