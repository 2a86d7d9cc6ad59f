"""
Enliterator Pipeline
====================

Drives document batches through the nine-stage enliteration pipeline.
"""

__version__ = "0.1.0"
