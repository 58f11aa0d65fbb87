"""
Rental Listing Assistant - hybrid search and conversational answers over a
small catalog of rental listings.
"""

__version__ = "1.0.0"
