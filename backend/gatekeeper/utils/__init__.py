"""Utility helpers for Gatekeeper."""
