"""Shared helpers for the npm cache proxy."""
