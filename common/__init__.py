"""
Shared building blocks: data types, error taxonomy, geo math, YAML config and
JSON logging used by every component of the overlay engine.
"""
