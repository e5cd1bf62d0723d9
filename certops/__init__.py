"""
certops - X.509 certificate lifecycle and deployment engine.
"""

__version__ = "1.0.0"
