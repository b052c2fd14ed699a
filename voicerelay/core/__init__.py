"""
Core data models, session control, and audio components for voicerelay.
"""

from .errors import *
from .models import *
from .formatting import *
from .response_queue import *
from .state_machine import *
from .realtime_events import *
from .telemetry import *
from .audio_io import *
from .controller import *
from .supervisor import *
