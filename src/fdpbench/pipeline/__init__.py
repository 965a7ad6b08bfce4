"""Chunked fetch/convert/import pipeline for historical block data."""

from fdpbench.pipeline.chunked import chunk_ranges, run_chunked
from fdpbench.pipeline.era import EraTools

__all__ = [
    "chunk_ranges",
    "run_chunked",
    "EraTools",
]
