"""
Infrastructure components for voicerelay - realtime inference channel client.
"""

from .realtime_client import *
