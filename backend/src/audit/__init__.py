"""Matching audit trail."""
