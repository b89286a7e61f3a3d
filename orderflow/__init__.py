"""
                Orderflow Fulfillment Pipeline

Order intake, payment authorization with tip adjustment, webhook-driven
fulfillment, kitchen ticket queue and exactly-once customer notifications,
with hybrid Mock/Real provider adapters.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
