"""
LimaWAN - expose Lima VM services to the WAN through a macOS pf anchor.

Generates, stages, validates, applies and tears down the "limawan"
anchor inside the host's shared pf configuration.
"""

__version__ = "1.0.0"
__author__ = "LimaWAN Team"
