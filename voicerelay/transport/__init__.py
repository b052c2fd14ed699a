"""
Device <-> host transport: wire protocol, client, and server.
"""

from .protocol import *
from .client import *
from .server import *
