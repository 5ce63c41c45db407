"""
StudioStyle Batch Processor

Batch background removal and studio-white backgrounds through an external
image-generation provider, with a concurrency-limited client-side job queue.
"""

__version__ = "1.0.0"
