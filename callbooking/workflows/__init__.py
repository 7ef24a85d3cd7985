"""Data-driven call conversation workflows."""
