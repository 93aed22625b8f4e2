"""
Ownly platform services.

Billing and subscription engine for the Ownly client-services platform.
"""

__version__ = "1.0.0"
