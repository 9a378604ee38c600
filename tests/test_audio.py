"""Tests for the audio module."""
import struct

import pytest

from subtimeline.audio import WAV_HEADER_SIZE, AudioReader, WavBuffer
from subtimeline.demux import StreamInfo
from subtimeline.errors import DemuxError, FatalMediaError, MediaOpenError
from subtimeline.models import ResolvedConfig
from subtimeline.producers import CancelToken

from fakes import FakeDemuxer, FakeResampler, audio_packet

AUDIO = StreamInfo(index=0, kind="audio", codec="aac")

# two 1600-sample packets fill one chunk
TWO_PACKETS = WAV_HEADER_SIZE + 2 * 3200


def make_reader(script, *, config=None, clock=lambda: 0.0, **demuxer_kw):
    cfg = config or ResolvedConfig(quiet=True, asr_chunk_size=TWO_PACKETS)
    dm = FakeDemuxer(script, stream=AUDIO, **demuxer_kw)
    reader = AudioReader(dm, cfg, resampler_factory=FakeResampler, clock=clock)
    reader.open("movie.mkv")
    return reader, dm


class TestWavBuffer:
    """Tests for WavBuffer."""

    def test_empty_header(self):
        """Test the header of a buffer without audio."""
        wav = WavBuffer()
        assert wav.size == WAV_HEADER_SIZE
        assert not wav.has_audio
        assert wav.duration == 0

    def test_finalize_patches_sizes(self):
        """Test the RIFF and data size fields."""
        wav = WavBuffer()
        wav.write(b"\x00\x00" * 16000)
        data = wav.finalize()
        assert data[:4] == b"RIFF"
        assert data[8:12] == b"WAVE"
        assert struct.unpack("<I", data[4:8])[0] == len(data) - 8
        assert struct.unpack("<I", data[40:44])[0] == 32000
        assert wav.duration == pytest.approx(1.0)

    def test_format_chunk(self):
        """Test that the fmt chunk describes 16 kHz mono s16."""
        data = WavBuffer().finalize()
        _, fmt, channels, rate, byte_rate, align, bits = struct.unpack("<IHHIIHH", data[16:36])
        assert (fmt, channels, rate, byte_rate, align, bits) == (1, 1, 16000, 32000, 2, 16)

    def test_write_after_finalize_appends(self):
        """Test that finalize leaves the write position at the end."""
        wav = WavBuffer()
        wav.write(b"ab")
        wav.finalize()
        wav.write(b"cd")
        assert wav.finalize()[WAV_HEADER_SIZE:] == b"abcd"

    def test_reset(self):
        """Test that reset starts a new file."""
        wav = WavBuffer()
        wav.write(b"abcd")
        wav.reset()
        assert wav.size == WAV_HEADER_SIZE


class TestReadChunks:
    """Tests for AudioReader.read_chunks."""

    def test_chunks_by_size(self):
        """Test that chunks are cut when the size limit is reached."""
        reader, _ = make_reader([audio_packet(ms) for ms in (0, 100, 200, 300, 400)])
        chunks = list(reader.read_chunks(0.0, CancelToken()))
        assert [c.number for c in chunks] == [1, 2, 3]
        assert [(c.start, c.end) for c in chunks] == [(0.0, 0.1), (0.2, 0.3), (0.4, 0.4)]
        assert len(chunks[0].data) == TWO_PACKETS
        assert chunks[0].data[:4] == b"RIFF"

    def test_chunks_by_age(self):
        """Test that chunks are cut when the wall-clock age is reached."""
        ticks = iter(range(100))
        cfg = ResolvedConfig(quiet=True, asr_chunk_size=10 ** 9, asr_chunk_seconds=1.5)
        reader, _ = make_reader([audio_packet(ms) for ms in (0, 100, 200, 300)],
                                config=cfg, clock=lambda: float(next(ticks)))
        chunks = list(reader.read_chunks(0.0, CancelToken()))
        assert [(c.start, c.end) for c in chunks] == [(0.0, 0.1), (0.2, 0.3)]

    def test_missing_pts_continues(self):
        """Test that frames without pts follow the previous frame."""
        cfg = ResolvedConfig(quiet=True, asr_chunk_size=10 ** 9)
        reader, _ = make_reader([audio_packet(1000), audio_packet(None), audio_packet(None)], config=cfg)
        chunks = list(reader.read_chunks(0.0, CancelToken()))
        assert len(chunks) == 1
        assert chunks[0].start == pytest.approx(1.0)
        assert chunks[0].end == pytest.approx(1.2)

    def test_start_time_subtracted(self):
        """Test that chunk times are relative to the container start."""
        cfg = ResolvedConfig(quiet=True, asr_chunk_size=10 ** 9)
        reader, _ = make_reader([audio_packet(5000)], config=cfg, start_time=4.0)
        chunks = list(reader.read_chunks(0.0, CancelToken()))
        assert chunks[0].start == pytest.approx(1.0)

    def test_cancelled_yields_nothing(self):
        """Test that a cancelled token stops before the first chunk."""
        reader, _ = make_reader([audio_packet(0), audio_packet(100)])
        token = CancelToken()
        token.cancel()
        assert list(reader.read_chunks(0.0, token)) == []

    def test_demux_budget(self):
        """Test that consecutive read failures abort the run."""
        cfg = ResolvedConfig(quiet=True, demux_max_errors=2)
        reader, _ = make_reader([DemuxError("a"), DemuxError("b")], config=cfg)
        with pytest.raises(FatalMediaError):
            list(reader.read_chunks(0.0, CancelToken()))

    def test_before_open(self):
        """Test read_chunks on an unopened reader."""
        reader = AudioReader(FakeDemuxer(stream=AUDIO), ResolvedConfig(quiet=True))
        with pytest.raises(MediaOpenError):
            list(reader.read_chunks(0.0, CancelToken()))


class TestSeek:
    """Tests for the initial seek."""

    def test_no_seek_near_start(self):
        """Test that early positions read from the start."""
        reader, dm = make_reader([])
        list(reader.read_chunks(10.0, CancelToken()))
        assert dm.seeks == []

    def test_seek_with_backoff(self):
        """Test that later positions seek back by the backoff."""
        reader, dm = make_reader([])
        list(reader.read_chunks(100.0, CancelToken()))
        assert dm.seeks == [(90.0, False)]

    def test_seek_clamped_to_duration(self):
        """Test that a target past the end is clamped."""
        reader, dm = make_reader([], duration=50.0)
        list(reader.read_chunks(100.0, CancelToken()))
        assert dm.seeks[0][0] == pytest.approx(49.95)

    def test_negative_target(self):
        """Test that a negative target seeks forward from zero."""
        cfg = ResolvedConfig(quiet=True, asr_seek_threshold=0.0, asr_seek_backoff=10.0)
        reader, dm = make_reader([], config=cfg)
        list(reader.read_chunks(5.0, CancelToken()))
        assert dm.seeks == [(0.0, True)]
