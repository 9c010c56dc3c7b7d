import unittest

import numpy as np

from ncv_rate_analyzer.errors import DuplicateChannel, DuplicateDevice, MalformedBuffer
from ncv_rate_analyzer.ingest.demux import DeviceRecord, RawReader, demultiplex_device, device_from_record
from ncv_rate_analyzer.models.raw import Channel, Readout


def _record(sequence_id, card_id, *, channels=2, buffer_size=8, minibuffer_size=4, data=None):
    n = channels * buffer_size
    if data is None:
        data = np.arange(n)
    n_mb = buffer_size // minibuffer_size
    return DeviceRecord(
        sequence_id=sequence_id,
        card_id=card_id,
        channels=channels,
        buffer_size=buffer_size,
        full_buffer_size=n,
        event_size=minibuffer_size // 4,
        trigger_number=n_mb,
        data=list(data),
        trigger_counts=list(range(n_mb)),
        rates=[10] * channels,
    )


class TestDemultiplexDevice(unittest.TestCase):
    def _demux(self, **kw):
        args = dict(
            device_id=4,
            channel_count=2,
            buffer_size=8,
            minibuffer_size=4,
            data=np.arange(16),
            trigger_counts=[7, 8],
            rates=[100, 200],
        )
        args.update(kw)
        return demultiplex_device(**args)

    def test_channel_lengths(self):
        for n_ch, S, mb in ((1, 2, 2), (2, 8, 4), (4, 40, 10), (3, 12, 2)):
            dev = self._demux(
                channel_count=n_ch,
                buffer_size=S,
                minibuffer_size=mb,
                data=np.arange(n_ch * S),
                trigger_counts=[0] * (S // mb),
                rates=[0] * n_ch,
            )
            self.assertEqual(len(dev.channels), n_ch)
            for ch in dev.channels.values():
                self.assertEqual(ch.n_samples, S)
                self.assertEqual(ch.num_minibuffers, S // mb)

    def test_half_regions_are_concatenated(self):
        dev = self._demux()
        # first halves: [0..3] ch0, [4..7] ch1; second halves: [8..11] ch0, [12..15] ch1
        np.testing.assert_array_equal(dev.channel(0).data, [0, 1, 2, 3, 8, 9, 10, 11])
        np.testing.assert_array_equal(dev.channel(1).data, [4, 5, 6, 7, 12, 13, 14, 15])
        self.assertEqual(dev.channel(1).rate, 200)
        self.assertEqual(dev.trigger_counts, (7, 8))

    def test_channels_tile_the_buffer(self):
        dev = self._demux(channel_count=3, buffer_size=6, minibuffer_size=3, data=np.arange(18), trigger_counts=[0, 0], rates=[0, 0, 0])
        all_samples = np.sort(np.concatenate([c.data for c in dev.channels.values()]))
        np.testing.assert_array_equal(all_samples, np.arange(18))

    def test_minibuffer_data(self):
        ch = self._demux().channel(0)
        np.testing.assert_array_equal(ch.minibuffer_data(0), [0, 1, 2, 3])
        np.testing.assert_array_equal(ch.minibuffer_data(1), [8, 9, 10, 11])
        with self.assertRaises(IndexError):
            ch.minibuffer_data(2)

    def test_samples_are_read_only(self):
        ch = self._demux().channel(0)
        with self.assertRaises(ValueError):
            ch.data[0] = 5

    def test_unsigned_words_become_signed(self):
        dev = self._demux(data=np.full(16, 0xFFFF, dtype=np.uint16))
        self.assertEqual(dev.channel(0).data.dtype, np.int16)
        self.assertEqual(int(dev.channel(0).data[0]), -1)

    def test_wrong_buffer_length(self):
        with self.assertRaises(MalformedBuffer):
            self._demux(data=np.arange(15))

    def test_wrong_trigger_count(self):
        with self.assertRaises(MalformedBuffer):
            self._demux(trigger_counts=[1, 2, 3])

    def test_odd_buffer_size(self):
        with self.assertRaises(MalformedBuffer):
            self._demux(channel_count=2, buffer_size=7, minibuffer_size=7, data=np.arange(14), trigger_counts=[0])

    def test_missing_rates(self):
        with self.assertRaises(MalformedBuffer):
            self._demux(rates=[1])

    def test_malformed_buffer_is_value_error(self):
        with self.assertRaises(ValueError):
            self._demux(data=np.arange(3))

    def test_duplicate_channel(self):
        dev = self._demux()
        extra = Channel(channel_id=0, rate=0, data=np.zeros(8), num_minibuffers=2)
        with self.assertRaises(DuplicateChannel):
            dev.add_channel(extra)
        dev.add_channel(extra, overwrite_ok=True)
        self.assertEqual(int(dev.channel(0).data.sum()), 0)

    def test_duplicate_device(self):
        r = Readout(sequence_id=1)
        r.add_device(self._demux())
        with self.assertRaises(DuplicateDevice):
            r.add_device(self._demux())


class TestDeviceRecord(unittest.TestCase):
    def test_event_size_converts_to_minibuffer_size(self):
        rec = _record(1, 4, buffer_size=16, minibuffer_size=8)
        self.assertEqual(rec.minibuffer_size, 8)
        dev = device_from_record(rec)
        self.assertEqual(dev.num_minibuffers, 2)

    def test_negative_sizes_rejected(self):
        rec = _record(1, 4)
        for field in ("full_buffer_size", "trigger_number", "channels"):
            bad = DeviceRecord(**{**rec.__dict__, field: -1})
            with self.assertRaises(MalformedBuffer):
                device_from_record(bad)

    def test_data_length_must_match_full_buffer_size(self):
        rec = _record(1, 4)
        bad = DeviceRecord(**{**rec.__dict__, "full_buffer_size": 12})
        with self.assertRaises(MalformedBuffer):
            device_from_record(bad)


class TestRawReader(unittest.TestCase):
    def _stream(self):
        return [_record(1, 4), _record(1, 5), _record(2, 4), _record(2, 5), _record(3, 4)]

    def test_groups_rows_by_sequence_id(self):
        readouts = list(RawReader(self._stream()))
        self.assertEqual([r.sequence_id for r in readouts], [1, 2, 3])
        self.assertEqual(sorted(readouts[0].devices), [4, 5])
        # truncated readout at end of stream is still returned
        self.assertEqual(sorted(readouts[2].devices), [4])

    def test_next_then_previous(self):
        reader = RawReader(self._stream())
        self.assertEqual(reader.next().sequence_id, 1)
        self.assertEqual(reader.next().sequence_id, 2)
        self.assertEqual(reader.previous().sequence_id, 1)
        self.assertIsNone(reader.previous())

    def test_end_of_stream(self):
        reader = RawReader([_record(9, 4)])
        self.assertEqual(reader.next().sequence_id, 9)
        self.assertIsNone(reader.next())

    def test_empty_stream(self):
        self.assertIsNone(RawReader([]).next())
        self.assertIsNone(RawReader([]).previous())

    def test_repeated_device_in_readout(self):
        with self.assertRaises(DuplicateDevice):
            list(RawReader([_record(1, 4), _record(1, 4)]))


if __name__ == "__main__":
    unittest.main()
