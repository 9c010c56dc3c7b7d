"""Analysis package.

Design principle:
  - Ingest produces :class:`~ncv_rate_analyzer.models.pulses.ReconstructedReadout` and
    :class:`~ncv_rate_analyzer.models.minibuffer.MinibufferRecord` objects joined on
    sequence id.
  - Analysis turns them into approved events, event-time histograms and rates.

All mutable state (reference clock, veto cursor, counts) lives inside one call
for one run or position and is never shared.
"""

from .cuts import VetoCursor, approve_event, first_failed_cut
from .histogram import TimeHistogram
from .timing import ReferenceClock
