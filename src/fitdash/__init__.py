"""
fitdash - scrollable Fitbit heart-rate timeline with sleep, workout and
resting-HR overlays, loaded incrementally one calendar day at a time.
"""

__version__ = "0.3.0"
