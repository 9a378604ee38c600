"""Tests for the reader module."""
from fractions import Fraction

import pytest

from subtimeline.bitmap import BitmapArena
from subtimeline.demux import DecodedSubtitle, Packet, StreamInfo, SubtitleRect
from subtimeline.errors import (
    DecodeError,
    DemuxError,
    FatalMediaError,
    MediaOpenError,
    OperationCancelled,
)
from subtimeline.models import ResolvedConfig, RunOutcome, SubtitleEntry
from subtimeline.producers import CancelToken
from subtimeline.reader import (
    EntryBatcher,
    SubtitleReader,
    load_subtitles,
    read_text_subtitle_utf8,
    resolve_subtitle_url,
)
from subtimeline.timeline import SubtitleTimeline

from fakes import FakeDemuxer, bitmap_packet, small_image, text_packet

PGS = StreamInfo(index=0, kind="subtitle", codec="hdmv_pgs_subtitle", is_bitmap=True)


def read(demuxer, config=None, token=None, use_bitmap=False, arena=None):
    reader = SubtitleReader(demuxer, config or ResolvedConfig(quiet=True), arena)
    reader.open("movie.mkv")
    out = []
    outcome = reader.read_all(out.append, token, use_bitmap=use_bitmap)
    return out, outcome


class TestReadTextSubtitle:
    """Tests for read_text_subtitle_utf8."""

    def test_utf8(self, tmp_path):
        """Test that UTF-8 content passes through."""
        p = tmp_path / "a.srt"
        p.write_text("1\nhéllo\n", encoding="utf-8")
        assert read_text_subtitle_utf8(p, 1024).decode("utf-8") == "1\nhéllo\n"

    def test_utf8_bom_stripped(self, tmp_path):
        """Test that a UTF-8 BOM is dropped."""
        p = tmp_path / "a.srt"
        p.write_bytes(b"\xef\xbb\xbfhi")
        assert read_text_subtitle_utf8(p, 1024) == b"hi"

    def test_utf16(self, tmp_path):
        """Test that UTF-16 with BOM is re-encoded."""
        p = tmp_path / "a.srt"
        p.write_bytes("über".encode("utf-16"))
        assert read_text_subtitle_utf8(p, 1024).decode("utf-8") == "über"

    def test_cp1252(self, tmp_path):
        """Test the legacy code page fallback."""
        p = tmp_path / "a.srt"
        p.write_bytes("café “quoted”".encode("cp1252"))
        assert read_text_subtitle_utf8(p, 1024).decode("utf-8") == "café “quoted”"

    def test_too_big(self, tmp_path):
        """Test the size limit."""
        p = tmp_path / "a.srt"
        p.write_bytes(b"12345")
        with pytest.raises(MediaOpenError):
            read_text_subtitle_utf8(p, 5)


class TestResolveSubtitleUrl:
    """Tests for resolve_subtitle_url."""

    def test_prefers_idx(self, tmp_path):
        """Test that a .sub with an .idx companion resolves to the .idx."""
        sub = tmp_path / "movie.sub"
        idx = tmp_path / "movie.idx"
        sub.write_bytes(b"")
        idx.write_text("")
        assert resolve_subtitle_url(str(sub), -1) == str(idx)

    def test_no_idx(self, tmp_path):
        """Test a .sub without companion."""
        sub = tmp_path / "movie.sub"
        sub.write_text("")
        assert resolve_subtitle_url(str(sub), -1) == str(sub)

    def test_explicit_stream(self, tmp_path):
        """Test that an explicit stream index is left alone."""
        sub = tmp_path / "movie.sub"
        (tmp_path / "movie.idx").write_text("")
        assert resolve_subtitle_url(str(sub), 2) == str(sub)


class TestSubtitleReaderOpen:
    """Tests for SubtitleReader.open."""

    def test_text_file_loaded_to_memory(self, tmp_path):
        """Test that external text subtitles are handed over as bytes."""
        p = tmp_path / "a.srt"
        p.write_bytes("caf\xe9".encode("cp1252"))
        dm = FakeDemuxer()
        SubtitleReader(dm, ResolvedConfig(quiet=True)).open(str(p))
        url, stream_index, kind, data = dm.opened
        assert url == str(p)
        assert kind == "subtitle"
        assert data == "café".encode("utf-8")

    def test_media_file_not_loaded(self):
        """Test that containers are opened by url."""
        dm = FakeDemuxer()
        SubtitleReader(dm, ResolvedConfig(quiet=True)).open("movie.mkv", 3)
        assert dm.opened == ("movie.mkv", 3, "subtitle", None)

    def test_read_before_open(self):
        """Test read_all on an unopened reader."""
        reader = SubtitleReader(FakeDemuxer(), ResolvedConfig(quiet=True))
        with pytest.raises(MediaOpenError):
            reader.read_all(lambda e: None)


class TestReadAllText:
    """Tests for reading text streams."""

    def test_entries(self):
        """Test timing and text of decoded entries."""
        out, outcome = read(FakeDemuxer([
            text_packet(1.0, 2.0, "Hello"),
            text_packet(4.5, 1.5, "World"),
        ]))
        assert outcome is RunOutcome.COMPLETED
        assert [(e.start, e.end, e.text) for e in out] == [(1.0, 3.0, "Hello"), (4.5, 6.0, "World")]

    def test_container_start_time_subtracted(self):
        """Test that timestamps are relative to the container start."""
        out, _ = read(FakeDemuxer([text_packet(11.0, 1.0, "x")], start_time=10.0))
        assert out[0].start == pytest.approx(1.0)
        assert out[0].end == pytest.approx(2.0)

    def test_ass_converted(self):
        """Test that ASS payloads become plain text."""
        sub = DecodedSubtitle(pts=2_000_000, end_display_time=1000,
                              rects=[SubtitleRect("ass", text="0,0,Default,,0,0,0,,{\\i1}Hi\\Nthere")])
        out, _ = read(FakeDemuxer([Packet(stream_index=0, raw=[sub])]))
        assert out[0].text == "Hi\nthere"

    def test_blank_text_skipped(self):
        """Test that whitespace-only payloads produce no entry."""
        out, _ = read(FakeDemuxer([text_packet(1.0, 1.0, "   "), text_packet(2.0, 1.0, "ok")]))
        assert [e.text for e in out] == ["ok"]

    def test_other_stream_ignored(self):
        """Test that packets of other streams are skipped."""
        out, _ = read(FakeDemuxer([text_packet(1.0, 1.0, "a", stream_index=5), text_packet(2.0, 1.0, "b")]))
        assert [e.text for e in out] == ["b"]

    def test_packet_pts_fallback(self):
        """Test timing from the packet when the payload has no pts."""
        sub = DecodedSubtitle(pts=None, end_display_time=500, rects=[SubtitleRect("text", text="x")])
        pkt = Packet(stream_index=0, pts=3000, time_base=Fraction(1, 1000), raw=[sub])
        out, _ = read(FakeDemuxer([pkt]))
        assert out[0].start == pytest.approx(3.0)
        assert out[0].end == pytest.approx(3.5)


class TestReadAllBitmap:
    """Tests for bitmap end-time reconciliation."""

    def test_empty_packet_closes_pending(self):
        """Test that an empty payload ends the open entry."""
        out, _ = read(FakeDemuxer([bitmap_packet(1.0), bitmap_packet(3.0, empty=True)], stream=PGS))
        assert len(out) == 1
        assert (out[0].start, out[0].end) == (1.0, 3.0)
        assert out[0].is_bitmap

    def test_open_ended_closed_by_next(self):
        """Test that a new payload ends an open-ended one."""
        out, _ = read(FakeDemuxer([bitmap_packet(1.0), bitmap_packet(2.5, duration_ms=1000)], stream=PGS))
        assert [(e.start, e.end) for e in out] == [(1.0, 2.5), (2.5, 3.5)]

    def test_bounded_entry_kept(self):
        """Test that an entry with its own duration is not cut by the next."""
        out, _ = read(FakeDemuxer([
            bitmap_packet(5.0, duration_ms=2000),
            bitmap_packet(8.0, duration_ms=1000),
        ], stream=PGS))
        assert [(e.start, e.end) for e in out] == [(5.0, 7.0), (8.0, 9.0)]

    def test_sequence(self):
        """Test a mixed run of open-ended, empty and bounded payloads."""
        out, _ = read(FakeDemuxer([
            bitmap_packet(1.0),
            bitmap_packet(3.0, empty=True),
            bitmap_packet(5.0, duration_ms=2000),
            bitmap_packet(8.0),
            bitmap_packet(9.0),
            bitmap_packet(10.0, empty=True),
        ], stream=PGS))
        assert [(e.start, e.end) for e in out] == [(1.0, 3.0), (5.0, 7.0), (8.0, 9.0), (9.0, 10.0)]

    def test_bitmaps_not_kept_by_default(self):
        """Test that payloads are dropped unless use_bitmap is set."""
        arena = BitmapArena()
        out, _ = read(FakeDemuxer([bitmap_packet(1.0), bitmap_packet(2.0, empty=True)], stream=PGS),
                      arena=arena)
        assert out[0].bitmap is None
        assert arena.live_count == 0

    def test_use_bitmap_stores_in_arena(self):
        """Test that payloads go to the arena with use_bitmap."""
        arena = BitmapArena()
        out, _ = read(FakeDemuxer([bitmap_packet(1.0), bitmap_packet(2.0, empty=True)], stream=PGS),
                      use_bitmap=True, arena=arena)
        assert out[0].bitmap is not None
        assert arena.live_count == 1
        with out[0].bitmap.borrow() as img:
            assert img.width == 6


class TestReadAllErrors:
    """Tests for error budgets and cancellation."""

    def test_demux_errors_recoverable(self):
        """Test that isolated read failures are skipped."""
        cfg = ResolvedConfig(quiet=True, demux_max_errors=3)
        out, outcome = read(FakeDemuxer([
            DemuxError("a"), DemuxError("b"),
            text_packet(1.0, 1.0, "x"),
            DemuxError("c"), DemuxError("d"),
            text_packet(2.0, 1.0, "y"),
        ]), config=cfg)
        assert outcome is RunOutcome.COMPLETED
        assert [e.text for e in out] == ["x", "y"]

    def test_demux_budget_fatal(self):
        """Test that consecutive read failures become fatal."""
        cfg = ResolvedConfig(quiet=True, demux_max_errors=3)
        with pytest.raises(FatalMediaError):
            read(FakeDemuxer([DemuxError("x")] * 3), config=cfg)

    def test_decode_budget_fatal(self):
        """Test that consecutive decode failures become fatal."""
        cfg = ResolvedConfig(quiet=True, decode_max_errors=2)
        bad = [Packet(stream_index=0, raw=DecodeError("bad")) for _ in range(2)]
        with pytest.raises(FatalMediaError):
            read(FakeDemuxer(bad), config=cfg)

    def test_pending_disposed_on_fatal(self):
        """Test that the held-back entry is released when the read aborts."""
        arena = BitmapArena()
        cfg = ResolvedConfig(quiet=True, demux_max_errors=1)
        with pytest.raises(FatalMediaError):
            read(FakeDemuxer([bitmap_packet(1.0), DemuxError("x")], stream=PGS),
                 config=cfg, use_bitmap=True, arena=arena)
        assert arena.live_count == 0

    def test_cancel_flushes_pending(self):
        """Test that cancellation still hands over the held-back entry."""
        token = CancelToken()
        reader = SubtitleReader(FakeDemuxer([
            text_packet(1.0, 1.0, "a"),
            text_packet(2.0, 1.0, "b"),
            text_packet(3.0, 1.0, "c"),
        ]), ResolvedConfig(quiet=True))
        reader.open("movie.mkv")
        out = []

        def on_entry(e):
            out.append(e)
            token.cancel()

        assert reader.read_all(on_entry, token) is RunOutcome.STOPPED
        assert [e.text for e in out] == ["a", "b"]


class TestEntryBatcher:
    """Tests for EntryBatcher."""

    def test_waits_for_count_and_interval(self):
        """Test that both thresholds must be met."""
        now = [0.0]
        batches = []
        b = EntryBatcher(batches.append, min_count=2, interval=0.5, clock=lambda: now[0])
        b.add(SubtitleEntry(0, 1))
        now[0] = 1.0
        assert batches == []
        b.add(SubtitleEntry(1, 2))
        assert len(batches) == 1 and len(batches[0]) == 2
        b.add(SubtitleEntry(2, 3))
        b.add(SubtitleEntry(3, 4))
        assert len(batches) == 1
        now[0] = 1.6
        b.add(SubtitleEntry(4, 5))
        assert len(batches) == 2 and len(batches[1]) == 3

    def test_flush_empty(self):
        """Test that flushing nothing does not call back."""
        batches = []
        EntryBatcher(batches.append).flush()
        assert batches == []

    def test_discard_disposes(self):
        """Test that discarded entries release their bitmaps."""
        arena = BitmapArena()
        b = EntryBatcher(lambda batch: None, min_count=10)
        b.add(SubtitleEntry(0, 1, is_bitmap=True, bitmap=arena.store(small_image())))
        b.discard()
        assert b.pending == []
        assert arena.live_count == 0


class CancellingDemuxer(FakeDemuxer):
    """Cancels a token after handing out a number of packets."""

    def __init__(self, script, token, after, **kw):
        super().__init__(script, **kw)
        self.token = token
        self.after = after
        self.served = 0

    def read_packet(self):
        if self.served == self.after:
            self.token.cancel()
        self.served += 1
        return super().read_packet()


class TestLoadSubtitles:
    """Tests for load_subtitles."""

    def test_loads_into_timeline(self):
        """Test a complete load."""
        tl = SubtitleTimeline(0)
        dm = FakeDemuxer([text_packet(i, 0.5, f"line {i}") for i in range(5)],
                         stream=StreamInfo(index=0, kind="subtitle", codec="subrip", language="ja"))
        reader = SubtitleReader(dm, ResolvedConfig(quiet=True))
        outcome = load_subtitles(tl, reader, "movie.mkv", -1, CancelToken(), clock=lambda: 0.0)
        assert outcome is RunOutcome.COMPLETED
        assert len(tl) == 5
        assert [e.index for e in tl.entries] == list(range(5))
        assert tl.language_source.code == "ja"
        assert dm.closed
        assert not tl.is_loading

    def test_explicit_language_wins(self):
        """Test that a given language overrides the container tag."""
        tl = SubtitleTimeline(0)
        dm = FakeDemuxer([text_packet(1, 1, "x")],
                         stream=StreamInfo(index=0, kind="subtitle", codec="subrip", language="ja"))
        load_subtitles(tl, SubtitleReader(dm, ResolvedConfig(quiet=True)), "m.mkv", -1,
                       CancelToken(), language="ko")
        assert tl.language_source.code == "ko"

    def test_replaces_previous_entries(self):
        """Test that the timeline is cleared before loading."""
        tl = SubtitleTimeline(0)
        tl.add(SubtitleEntry(100, 101, text="old"))
        dm = FakeDemuxer([text_packet(1, 1, "new")])
        load_subtitles(tl, SubtitleReader(dm, ResolvedConfig(quiet=True)), "m.mkv", -1, CancelToken())
        assert [e.text for e in tl.entries] == ["new"]

    def test_cancel_leaves_empty_timeline(self):
        """Test that a cancelled load keeps no partial track."""
        tl = SubtitleTimeline(0)
        token = CancelToken()
        dm = CancellingDemuxer([text_packet(i, 0.5, str(i)) for i in range(10)], token, after=6)
        cfg = ResolvedConfig(quiet=True, batch_min_count=1, batch_interval=0.0)
        outcome = load_subtitles(tl, SubtitleReader(dm, cfg), "m.mkv", -1, token)
        assert outcome is RunOutcome.STOPPED
        assert len(tl) == 0
        assert dm.closed

    def test_already_cancelled(self):
        """Test that a cancelled token stops before touching the timeline."""
        tl = SubtitleTimeline(0)
        tl.add(SubtitleEntry(1, 2, text="keep"))
        token = CancelToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            load_subtitles(tl, SubtitleReader(FakeDemuxer(), ResolvedConfig(quiet=True)),
                           "m.mkv", -1, token)
        assert len(tl) == 1

    def test_fatal_error_propagates(self):
        """Test that a fatal read error reaches the caller and closes the demuxer."""
        tl = SubtitleTimeline(0)
        dm = FakeDemuxer([DemuxError("x")])
        cfg = ResolvedConfig(quiet=True, demux_max_errors=1)
        with pytest.raises(FatalMediaError):
            load_subtitles(tl, SubtitleReader(dm, cfg), "m.mkv", -1, CancelToken())
        assert dm.closed
        assert not tl.is_loading
