"""Tests for the demux module against real PyAV decoding."""
import struct
import wave
from unittest.mock import MagicMock

import numpy as np
import pytest
from av.subtitles.subtitle import AssSubtitle, BitmapSubtitle

from subtimeline.audio import AvResampler
from subtimeline.bitmap import BitmapArena
from subtimeline.demux import NO_PTS, AvDemuxer, DecodedAudio, Packet, StreamInfo
from subtimeline.errors import MediaOpenError
from subtimeline.models import ResolvedConfig
from subtimeline.palettes import (
    PGS_END,
    PGS_OBJECT,
    PGS_PALETTE,
    PGS_PRESENTATION,
    PGS_WINDOW,
    PgsPalettes,
)
from subtimeline.reader import SubtitleReader

SRT_TEXT = """1
00:00:01,000 --> 00:00:02,500
First line

2
00:00:04,000 --> 00:00:05,000
Second line
"""


def sup_segment(pts90, seg_type, payload):
    return b"PG" + struct.pack(">IIBH", pts90, 0, seg_type, len(payload)) + payload


def presentation(objects, palette_id=0, state=0x80, number=0):
    data = struct.pack(">HHBHBBBB", 64, 32, 0x10, number, state, 0, palette_id, len(objects))
    for x, y in objects:
        data += struct.pack(">HBBHH", 0, 0, 0, x, y)
    return data


def palette_segment(palette_id, entries):
    data = bytes([palette_id, 0])
    for entry in entries:
        data += bytes(entry)
    return data


def object_segment(width, height, rle):
    return (struct.pack(">HBB", 0, 0, 0xC0) + (len(rle) + 4).to_bytes(3, "big")
            + struct.pack(">HH", width, height) + rle)


def write_sup(path):
    # 4x2 object of palette index 1 (opaque white) shown from 0s, cleared at 1s
    rle = bytes([0x00, 0x84, 0x01, 0x00, 0x00]) * 2
    segments = [
        sup_segment(0, PGS_PRESENTATION, presentation([(8, 4)])),
        sup_segment(0, PGS_WINDOW, struct.pack(">BBHHHH", 1, 0, 8, 4, 4, 2)),
        sup_segment(0, PGS_PALETTE, palette_segment(0, [(1, 235, 128, 128, 255)])),
        sup_segment(0, PGS_OBJECT, object_segment(4, 2, rle)),
        sup_segment(0, PGS_END, b""),
        sup_segment(90000, PGS_PRESENTATION, presentation([], state=0x00, number=1)),
        sup_segment(90000, PGS_END, b""),
    ]
    path.write_bytes(b"".join(segments))
    return path


def write_wav(path, seconds=1.0, rate=16000):
    t = np.arange(int(seconds * rate)) / rate
    samples = (np.sin(2 * np.pi * 440 * t) * 8000).astype("<i2")
    with wave.open(str(path), "wb") as w:
        w.setnchannels(1)
        w.setsampwidth(2)
        w.setframerate(rate)
        w.writeframes(samples.tobytes())
    return path


def read_entries(path, arena=None):
    reader = SubtitleReader(AvDemuxer(), ResolvedConfig(quiet=True), arena)
    stream = reader.open(str(path))
    out = []
    reader.read_all(out.append, use_bitmap=arena is not None)
    return stream, out


class TestAvDemuxerText:
    """Tests for text subtitle decoding through PyAV."""

    def test_srt_file(self, tmp_path):
        """Test that every cue of an .srt file reaches the reader."""
        path = tmp_path / "movie.en.srt"
        path.write_text(SRT_TEXT, encoding="utf-8")
        stream, out = read_entries(path)
        assert stream.codec == "subrip"
        assert not stream.is_bitmap
        assert [e.text for e in out] == ["First line", "Second line"]
        assert out[1].start - out[0].start == pytest.approx(3.0)

    def test_no_audio_stream(self, tmp_path):
        """Test that asking a subtitle file for audio fails to open."""
        path = tmp_path / "movie.srt"
        path.write_text(SRT_TEXT, encoding="utf-8")
        demuxer = AvDemuxer()
        with pytest.raises(MediaOpenError):
            demuxer.open(str(path), kind="audio")


class TestAvDemuxerBitmap:
    """Tests for PGS decoding through PyAV."""

    def test_sup_file(self, tmp_path):
        """Test that a PGS display set becomes a bitmap entry closed by the empty set."""
        arena = BitmapArena()
        stream, out = read_entries(write_sup(tmp_path / "movie.sup"), arena)
        assert stream.codec == "hdmv_pgs_subtitle"
        assert stream.is_bitmap
        assert len(out) == 1
        entry = out[0]
        assert entry.is_bitmap
        assert entry.end - entry.start == pytest.approx(1.0)
        with entry.bitmap.borrow() as image:
            assert (image.x, image.y, image.width, image.height) == (8, 4, 4, 2)
            assert (image.rgba[..., 3] == 255).all()
            assert tuple(image.rgba[0, 0, :3]) == (235, 235, 235)
        entry.dispose()
        assert arena.live_count == 0


class TestAvDemuxerDecode:
    """Tests for subtitle set conversion with a mocked codec context."""

    def make(self, codec="hdmv_pgs_subtitle"):
        demuxer = AvDemuxer()
        demuxer._info = StreamInfo(index=0, kind="subtitle", codec=codec, is_bitmap=True)
        demuxer._stream = MagicMock()
        demuxer._palettes = PgsPalettes()
        return demuxer

    def test_no_output(self):
        """Test that a packet without a finished set decodes to nothing."""
        demuxer = self.make()
        demuxer._stream.codec_context.decode2.return_value = None
        assert demuxer.decode(Packet(stream_index=0, raw=b"")) == []

    def test_empty_set(self):
        """Test that a set without rects is kept so it can end the shown bitmap."""
        demuxer = self.make()
        demuxer._stream.codec_context.decode2.return_value = MagicMock(
            pts=NO_PTS, start_display_time=0, end_display_time=0, rects=())
        decoded = demuxer.decode(Packet(stream_index=0, raw=b""))
        assert len(decoded) == 1
        assert decoded[0].rects == []
        assert decoded[0].pts is None

    def test_bitmap_palette_from_packets(self):
        """Test that the index plane is coloured with the palette seen in the packet."""
        demuxer = self.make()
        rect = MagicMock(spec=BitmapSubtitle)
        rect.x, rect.y, rect.width, rect.height, rect.nb_colors = 2, 3, 2, 1, 256
        rect.planes = (bytes([0, 1]),)
        demuxer._stream.codec_context.decode2.return_value = MagicMock(
            pts=5_000_000, start_display_time=0, end_display_time=0xFFFFFFFF, rects=(rect,))
        raw = (bytes([PGS_PRESENTATION, 0, 11]) + presentation([], palette_id=2)
               + bytes([PGS_PALETTE, 0, 7]) + palette_segment(2, [(1, 16, 128, 128, 128)]))
        decoded = demuxer.decode(Packet(stream_index=0, raw=raw))
        image = decoded[0].rects[0].image
        assert decoded[0].pts == 5_000_000
        assert image.rgba.shape == (1, 2, 4)
        assert tuple(image.rgba[0, 0]) == (0, 0, 0, 0)
        assert tuple(image.rgba[0, 1]) == (16, 16, 16, 128)

    def test_bitmap_without_palette(self):
        """Test that a rect is kept without raster when no palette is known."""
        demuxer = self.make(codec="dvb_subtitle")
        demuxer._palettes = None
        rect = MagicMock(spec=BitmapSubtitle)
        rect.x, rect.y, rect.width, rect.height, rect.nb_colors = 0, 0, 2, 1, 16
        rect.planes = (bytes([0, 1]),)
        demuxer._stream.codec_context.decode2.return_value = MagicMock(
            pts=0, start_display_time=0, end_display_time=1000, rects=(rect,))
        decoded = demuxer.decode(Packet(stream_index=0, raw=b""))
        assert decoded[0].rects[0].kind == "bitmap"
        assert decoded[0].rects[0].image is None

    def test_ass_rect(self):
        """Test that ASS rects keep their event text."""
        demuxer = self.make(codec="subrip")
        demuxer._palettes = None
        rect = MagicMock(spec=AssSubtitle)
        rect.ass = b"0,0,Default,,0,0,0,,Hello"
        demuxer._stream.codec_context.decode2.return_value = MagicMock(
            pts=1_000_000, start_display_time=0, end_display_time=1500, rects=(rect,))
        decoded = demuxer.decode(Packet(stream_index=0, raw=b""))
        assert decoded[0].rects[0].kind == "ass"
        assert decoded[0].rects[0].text == "0,0,Default,,0,0,0,,Hello"


class TestAvDemuxerAudio:
    """Tests for audio decoding through PyAV."""

    def test_wav_file(self, tmp_path):
        """Test that a WAV file decodes to frames and resamples to 16 kHz mono s16."""
        path = write_wav(tmp_path / "tone.wav")
        demuxer = AvDemuxer()
        stream = demuxer.open(str(path), kind="audio")
        assert stream.kind == "audio"
        resampler = AvResampler()
        frames = []
        pcm = b""
        while True:
            packet = demuxer.read_packet()
            if packet is None:
                break
            for audio in demuxer.decode(packet):
                frames.append(audio)
                pcm += resampler.resample(audio)
        pcm += resampler.flush()
        demuxer.close()

        assert frames and all(isinstance(f, DecodedAudio) for f in frames)
        assert frames[0].sample_rate == 16000
        assert sum(f.samples for f in frames) == 16000
        assert len(pcm) == pytest.approx(32000, abs=64)
