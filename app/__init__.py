"""Wager settlement engine."""
