"""
Shepherd kernel: durable store, domain types, and the transactional
services of the VM governance pipeline.
"""

__version__ = "0.1.0"
