"""
                Order Lifecycle Service

Coordinates a restaurant's order pipeline: the order state machine,
cache consistency, real-time notification fan-out, webhook delivery and
the courier location loop that feeds live tracking.

Author: Khalil_Bannouri
Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__author__ = "Khalil_Bannouri"
