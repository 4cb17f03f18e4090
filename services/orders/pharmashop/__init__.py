"""
PharmaShop orders service.

Order submission, prescription checks, admin order management and mock
payments for the pharmacy storefront.
"""
__version__ = "1.0.0"
