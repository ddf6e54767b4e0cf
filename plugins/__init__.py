"""Standalone window host for the desktop tool panels."""
