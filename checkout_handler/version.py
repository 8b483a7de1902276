"""
Version information for the checkout handler package.
"""

__version__ = "1.0.0"
