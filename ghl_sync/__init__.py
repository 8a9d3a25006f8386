"""
GoHighLevel CRM sync engine
"""

__version__ = "1.0.0"
