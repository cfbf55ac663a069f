"""Benchmark-driven Linux virtual memory optimizer."""

__version__ = '1.0.0'
