"""Utility helpers shared across the studyflow package."""
