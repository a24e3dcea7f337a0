"""
Digital Matter to Traccar gateway
"""
__version__ = "0.1.0"
