"""Tests for samples and the bounded per-channel buffer."""

import math

import pytest

from hmi_gestures.errors import IngestionError
from hmi_gestures.samples import POINTER, Sample, SampleBuffer


class TestSample:
    def test_from_dict(self):
        s = Sample.from_dict({"x": 1, "y": 2.5, "timestamp": 10})
        assert s == Sample(1.0, 2.5, 10.0)
        assert s.pressure is None

    def test_pressure_kept(self):
        s = Sample.from_dict({"x": 1, "y": 2, "timestamp": 0, "pressure": 0.5})
        assert s.pressure == 0.5
        assert s.to_dict()["pressure"] == 0.5

    @pytest.mark.parametrize("data", [
        {"y": 1, "timestamp": 0},
        {"x": None, "y": 1, "timestamp": 0},
        {"x": "1", "y": 1, "timestamp": 0},
        {"x": True, "y": 1, "timestamp": 0},
        {"x": math.nan, "y": 1, "timestamp": 0},
        {"x": 1, "y": math.inf, "timestamp": 0},
        {"x": 1, "y": 1},
        {"x": 1, "y": 1, "timestamp": 0, "pressure": "hard"},
    ])
    def test_malformed_rejected(self, data):
        with pytest.raises(IngestionError):
            Sample.from_dict(data)

    def test_not_a_mapping(self):
        with pytest.raises(IngestionError):
            Sample.from_dict([1, 2, 3])

    def test_ingestion_error_is_value_error(self):
        with pytest.raises(ValueError):
            Sample.from_dict({})

    def test_validate_direct_construction(self):
        assert Sample(1, 2, 3).validate() == Sample(1, 2, 3)
        with pytest.raises(IngestionError):
            Sample(math.nan, 0, 0).validate()

    def test_validate_checks_each_field(self):
        sample = Sample(1, 2, 3, pressure=0.5)
        assert sample.validate() is sample
        with pytest.raises(IngestionError, match="pressure"):
            Sample(1, 2, 3, pressure=math.inf).validate()
        with pytest.raises(IngestionError, match="timestamp"):
            Sample(1, 2, "soon").validate()
        with pytest.raises(IngestionError, match="not numeric"):
            Sample(True, 2, 3).validate()

    def test_immutable(self):
        s = Sample(1, 2, 3)
        with pytest.raises(AttributeError):
            s.x = 5

    def test_distance(self):
        assert Sample(0, 0, 0).distance_to(Sample(3, 4, 0)) == pytest.approx(5.0)


class TestSampleBuffer:
    def test_fifo_eviction_keeps_most_recent(self):
        buf = SampleBuffer(capacity=100)
        for i in range(150):
            buf.push(POINTER, Sample(i, i, float(i)))

        snap = buf.snapshot(POINTER)
        assert len(snap) == 100
        assert [s.timestamp for s in snap] == [float(i) for i in range(50, 150)]

    def test_push_reports_new_channel(self):
        buf = SampleBuffer()
        assert buf.push(POINTER, Sample(0, 0, 0)) is True
        assert buf.push(POINTER, Sample(1, 1, 1)) is False

    def test_snapshot_is_immutable_copy(self):
        buf = SampleBuffer()
        buf.push(POINTER, Sample(0, 0, 0))
        snap = buf.snapshot(POINTER)
        buf.push(POINTER, Sample(1, 1, 1))

        assert isinstance(snap, tuple)
        assert len(snap) == 1
        assert len(buf.snapshot(POINTER)) == 2

    def test_unknown_channel_snapshot_empty(self):
        assert SampleBuffer().snapshot("nope") == ()

    def test_end_channel_clears(self):
        buf = SampleBuffer()
        buf.push(POINTER, Sample(0, 0, 0))
        assert buf.end_channel(POINTER) is True
        assert buf.snapshot(POINTER) == ()
        assert buf.origin(POINTER) is None
        assert POINTER not in buf
        assert buf.end_channel(POINTER) is False

    def test_origin_survives_eviction(self):
        buf = SampleBuffer(capacity=3)
        for i in range(10):
            buf.push(POINTER, Sample(i, 0, float(i)))
        assert buf.origin(POINTER) == Sample(0, 0, 0.0)
        assert buf.snapshot(POINTER)[0].x == 7

    def test_touch_origins_recaptured_when_contact_added(self):
        buf = SampleBuffer()
        buf.push(1, Sample(0, 0, 0))
        buf.push(1, Sample(10, 0, 10))
        buf.push(2, Sample(100, 0, 20))

        assert buf.origin(1) == Sample(10, 0, 10)
        assert buf.origin(2) == Sample(100, 0, 20)

    def test_touch_origins_recaptured_when_contact_ends(self):
        buf = SampleBuffer()
        buf.push(1, Sample(0, 0, 0))
        buf.push(2, Sample(50, 0, 0))
        buf.push(3, Sample(100, 0, 0))
        buf.push(1, Sample(5, 0, 10))

        buf.end_channel(3)
        assert buf.origin(1) == Sample(5, 0, 10)
        assert buf.touch_channels == [1, 2]

    def test_pointer_does_not_move_touch_origins(self):
        buf = SampleBuffer()
        buf.push(1, Sample(0, 0, 0))
        buf.push(1, Sample(10, 0, 10))
        buf.push(POINTER, Sample(5, 5, 10))
        assert buf.origin(1) == Sample(0, 0, 0)

    def test_set_capacity_keeps_recent(self):
        buf = SampleBuffer(capacity=10)
        for i in range(10):
            buf.push(POINTER, Sample(i, 0, float(i)))
        buf.set_capacity(4)

        assert buf.capacity == 4
        assert [s.x for s in buf.snapshot(POINTER)] == [6, 7, 8, 9]
        buf.push(POINTER, Sample(10, 0, 10.0))
        assert len(buf.snapshot(POINTER)) == 4

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            SampleBuffer(capacity=0)

    def test_len_and_clear(self):
        buf = SampleBuffer()
        buf.push(POINTER, Sample(0, 0, 0))
        buf.push("t1", Sample(0, 0, 0))
        buf.push("t1", Sample(1, 0, 1))
        assert len(buf) == 3
        assert buf.channels == [POINTER, "t1"]
        buf.clear()
        assert len(buf) == 0
        assert buf.channels == []
