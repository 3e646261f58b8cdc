"""
Depthflow
=========

Streaming order book engine with microstructure signals and a
remote-first, locally-backed direction predictor.
"""

__version__ = "1.0.0"
