"""Command line interface for hlspipe."""
