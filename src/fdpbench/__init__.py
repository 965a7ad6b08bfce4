"""fdp-bench: A/B storage benchmarks for flexible data placement on F2FS."""

__version__ = "0.1.0"
