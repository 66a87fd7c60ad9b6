"""Transcript to exam-material pipeline: segmentation, summaries, consolidation, exam materials."""

__version__ = "0.3.0"
