"""Checksum engine modules and the desktop tool panels built on them."""
