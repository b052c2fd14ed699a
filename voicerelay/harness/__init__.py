"""
Verification harness: per-session test state and the session-log watcher.
"""

from .test_state import *
from .harness import *
