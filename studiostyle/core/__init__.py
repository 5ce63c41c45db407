"""
Core infrastructure: configuration, logging, exceptions, metrics, storage.
"""
