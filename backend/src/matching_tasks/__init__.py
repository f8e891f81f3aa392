"""Matching task processing: status machine, batch runner and human review."""
