"""
TaxFlow

Background job scheduling service for the tax filing assistant.
"""

__version__ = "1.0.0"
