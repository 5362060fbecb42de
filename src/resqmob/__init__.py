"""
ResQMob SOS engine

Alert lifecycle and notification fan-out for the ResQMob
emergency-response app.
"""

__version__ = "1.0.0"
