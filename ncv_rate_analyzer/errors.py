"""Error taxonomy for the rate analysis chain.

Every error derives from :class:`NcvAnalysisError` *and* from the builtin that
best describes it (``ValueError`` or ``KeyError``), so callers may catch either.

Propagation policy
------------------
- Integrity violations (malformed buffers, duplicate or mismatched ids, clocks
  running backwards, missing pulse keys) abort processing of the current run.
- :class:`UnknownReferenceTime` is the only recoverable condition: the affected
  event is skipped, a warning is emitted, and processing continues.
- Nothing is retried. Inputs are finite, already-captured datasets.
"""

from __future__ import annotations


class NcvAnalysisError(Exception):
    """Base class for all analysis errors."""


class MalformedBuffer(NcvAnalysisError, ValueError):
    """Buffer or metadata size invariants are violated."""


class DuplicateChannel(NcvAnalysisError, ValueError):
    """A channel id was added twice to the same device without overwrite."""


class DuplicateDevice(NcvAnalysisError, ValueError):
    """A device id was added twice to the same readout without overwrite."""


class DuplicateSequenceID(NcvAnalysisError, ValueError):
    """A sequence id repeats within one chunk of a record stream."""


class StreamLengthMismatch(NcvAnalysisError, ValueError):
    """The two input streams have different chunk or entry counts."""


class SequenceIDMismatch(NcvAnalysisError, ValueError):
    """The two input streams disagree on a sequence id."""


class InvalidTimestamp(NcvAnalysisError, ValueError):
    """A minibuffer timestamp precedes the last reference trigger."""


class UnknownReferenceTime(NcvAnalysisError, ValueError):
    """No reference (beam) trigger has been seen yet; the event time is untrusted."""


class MissingKey(NcvAnalysisError, KeyError):
    """Pulse lookup by (device, channel, minibuffer) found no entry."""

    def __str__(self) -> str:
        # KeyError.__str__ quotes its argument; keep the message readable.
        return str(self.args[0]) if self.args else ""
