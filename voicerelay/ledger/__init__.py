"""
Host control plane: session ledger, terminal injector, prompt verification.
"""

from .session_ledger import *
from .injector import *
from .verifier import *
