"""
GateFlow access core.

Product entitlement resolution, guest purchase claims and the
refund-triggered access revocation protocol for the GateFlow storefront.
"""

__version__ = "0.4.0"
