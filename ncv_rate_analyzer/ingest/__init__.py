"""Ingest package - raw buffer demultiplexing and record sources.

This package handles:
- Splitting shared device buffers into per-channel waveforms
- Grouping raw device rows into per-trigger readouts
- Joining the waveform and metadata streams on sequence id
- Loading pulse and minibuffer tables from CSV

Key classes:
- RawReader: Walks a raw device stream readout by readout
- PulseTableSource / MinibufferTableSource: pandas-backed record sources

Design principle:
- Readers validate sizes and ids up front; integrity violations are fatal
- Both streams are always visited in ascending sequence-id order
"""

from .demux import EVENT_SIZE_TO_MINIBUFFER_SIZE, DeviceRecord, RawReader, demultiplex_device, device_from_record
from .streams import InMemorySource, build_sequence_index, iter_synchronized
from .tables import (
    MinibufferTableSource,
    PulseTableSource,
    read_capture_times,
    read_minibuffer_table,
    read_pulse_table,
)
