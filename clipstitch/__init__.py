"""
clipstitch - timeline compilation service and client.
"""

__version__ = "1.0.0"
