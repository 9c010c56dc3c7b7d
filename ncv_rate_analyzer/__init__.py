"""NCV Rate Analyzer -- background neutron rates in the ANNIE neutron capture volume.

This package provides tools for:
- Demultiplexing raw digitizer buffers into per-channel waveforms
- Joining the pulse and minibuffer-timing streams on sequence id
- Rebuilding event times relative to the last beam trigger (Hefty mode)
- Applying the dead-time, tank-activity and coincidence cuts
- Accumulating event-time histograms with Poisson errors and background subtraction
- Extracting the NCV efficiency from a template fit to calibration-source data

Key principles:
- Sequence ids are unique and both streams must agree on them
- Streams are always visited in ascending sequence-id order
- Integrity violations abort the run; only unknown beam times are skipped with a warning

Main subpackages:
- analysis: Time reconstruction, cuts, histograms, rates, efficiency fit, export
- ingest: Raw buffer demultiplexing, stream merge and table-backed record sources
- models: Data models (Readout, ReconstructedReadout, MinibufferRecord, AnalysisProfile)
- scripts: Command-line driver (crank)
"""

__all__ = []
