"""
VPN fleet orchestration controller
"""

__version__ = "1.0.0"
