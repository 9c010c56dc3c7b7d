"""Sequence-synchronized merge of the waveform (pulse) and metadata (minibuffer) streams.

Both streams are split into chunks (one per run/file). Within a chunk the rows are
not assumed to be ordered; each stream is indexed by sequence id once, the two id
sets are checked for equality, and the readouts are then loaded pairwise in
ascending sequence-id order.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, Protocol, Sequence, Tuple

from ncv_rate_analyzer.errors import DuplicateSequenceID, SequenceIDMismatch, StreamLengthMismatch
from ncv_rate_analyzer.models.minibuffer import MinibufferRecord
from ncv_rate_analyzer.models.pulses import ReconstructedReadout


logger = logging.getLogger(__name__)


class RecordSource(Protocol):
    """Random-access record source (one chunk of one stream)."""

    def __len__(self) -> int: ...

    def sequence_id_at(self, row: int) -> int: ...

    def load(self, row: int) -> Any: ...


class InMemorySource:
    """Record source over already-loaded records that carry a ``sequence_id``."""

    def __init__(self, records: Sequence[Any]):
        self._records = list(records)

    def __len__(self) -> int:
        return len(self._records)

    def sequence_id_at(self, row: int) -> int:
        return int(self._records[row].sequence_id)

    def load(self, row: int) -> Any:
        return self._records[row]


def build_sequence_index(source: RecordSource) -> Dict[int, int]:
    """Scan ``source`` once and return ``sequence_id -> row`` in ascending id order.

    Raises
    ------
    DuplicateSequenceID
        If a sequence id occurs on two rows.
    """
    index: Dict[int, int] = {}
    for row in range(len(source)):
        sid = int(source.sequence_id_at(row))
        if sid in index:
            raise DuplicateSequenceID(f"Duplicate SequenceID {sid} at rows {index[sid]} and {row}")
        index[sid] = row
    return dict(sorted(index.items()))


def _check_chunk(chunk: int, pulse_index: Dict[int, int], mb_index: Dict[int, int]) -> None:
    if pulse_index.keys() != mb_index.keys():
        only_pulse = sorted(set(pulse_index) - set(mb_index))
        only_mb = sorted(set(mb_index) - set(pulse_index))
        raise SequenceIDMismatch(
            f"SequenceID sets differ in chunk {chunk}: "
            f"{len(only_pulse)} only in waveform stream (first: {only_pulse[:5]}), "
            f"{len(only_mb)} only in metadata stream (first: {only_mb[:5]})"
        )


def iter_synchronized(
    pulse_chunks: Sequence[RecordSource],
    minibuffer_chunks: Sequence[RecordSource],
) -> Iterator[Tuple[int, ReconstructedReadout, MinibufferRecord]]:
    """Yield ``(chunk_index, readout, minibuffer_record)`` joined on sequence id.

    Parameters
    ----------
    pulse_chunks:
        Waveform-stream chunks whose ``load(row)`` returns a :class:`ReconstructedReadout`.
    minibuffer_chunks:
        Metadata-stream chunks whose ``load(row)`` returns a :class:`MinibufferRecord`.

    Raises
    ------
    StreamLengthMismatch
        Different numbers of chunks, or different row counts in a chunk.
    SequenceIDMismatch
        Different id sets in a chunk, or a loaded record carrying another id or none.
    DuplicateSequenceID
        A sequence id repeats within a chunk.
    """
    if len(pulse_chunks) != len(minibuffer_chunks):
        raise StreamLengthMismatch(
            f"Waveform stream has {len(pulse_chunks)} chunks, metadata stream has {len(minibuffer_chunks)}"
        )

    for chunk, (pulses, minibuffers) in enumerate(zip(pulse_chunks, minibuffer_chunks)):
        logger.info("Reading chunk %d", chunk)
        if len(pulses) != len(minibuffers):
            raise StreamLengthMismatch(
                f"Chunk {chunk}: waveform stream has {len(pulses)} entries, metadata stream has {len(minibuffers)}"
            )

        pulse_index = build_sequence_index(pulses)
        mb_index = build_sequence_index(minibuffers)
        _check_chunk(chunk, pulse_index, mb_index)

        n = len(pulse_index)
        for k, (sid, pulse_row) in enumerate(pulse_index.items()):
            if k % 1000 == 0:
                logger.info("SequenceID %d of %d (chunk %d)", k, n, chunk)
            readout = pulses.load(pulse_row)
            record = minibuffers.load(mb_index[sid])
            for name, loaded in (("waveform", readout), ("metadata", record)):
                loaded_id = getattr(loaded, "sequence_id", None)
                if loaded_id is None or int(loaded_id) != sid:
                    raise SequenceIDMismatch(
                        f"Chunk {chunk}: {name} record loaded for SequenceID {sid} carries SequenceID {loaded_id}"
                    )
            yield chunk, readout, record
