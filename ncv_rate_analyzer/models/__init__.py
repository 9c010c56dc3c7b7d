from .minibuffer import BACKGROUND_LABELS, NUM_HEFTY_MINIBUFFERS, MinibufferLabel, MinibufferRecord
from .profile import AnalysisProfile
from .pulses import Pulse, ReconstructedReadout
from .raw import Channel, Device, Readout
from .results import ValueWithError

__all__ = [
    "AnalysisProfile",
    "BACKGROUND_LABELS",
    "Channel",
    "Device",
    "MinibufferLabel",
    "MinibufferRecord",
    "NUM_HEFTY_MINIBUFFERS",
    "Pulse",
    "Readout",
    "ReconstructedReadout",
    "ValueWithError",
]
