"""Tests for the timeline module."""
import pytest

from subtimeline.bitmap import BitmapArena
from subtimeline.events import EventChannel, EventKind, drain
from subtimeline.languages import get_language
from subtimeline.models import PositionState, SlotConfig, SubtitleEntry
from subtimeline.timeline import SubtitleTimeline

from fakes import FIVE, entries, small_image


@pytest.fixture
def timeline():
    tl = SubtitleTimeline(0, SlotConfig())
    tl.load(entries(*FIVE))
    return tl


class TestSetCurrentTime:
    """Tests for cursor placement by set_current_time."""

    def test_initial_state_is_first(self):
        """Test that an empty timeline starts before the first entry."""
        tl = SubtitleTimeline(0)
        assert tl.state is PositionState.FIRST
        assert tl.current_index == -1

    def test_before_first_entry(self, timeline):
        """Test a time before the first start."""
        timeline.set_current_time(0.5)
        assert timeline.state is PositionState.FIRST
        assert timeline.current_index == -1
        assert timeline.get_current() is None
        assert timeline.get_next().start == 1
        assert timeline.get_prev() is None

    def test_inside_entry(self, timeline):
        """Test a time covered by an entry."""
        timeline.set_current_time(12)
        assert timeline.state is PositionState.SHOWING
        assert timeline.current_index == 1
        assert timeline.get_current().start == 10
        assert timeline.get_prev().start == 1
        assert timeline.get_next().start == 20

    def test_between_entries(self, timeline):
        """Test a time in the gap after an entry."""
        timeline.set_current_time(18)
        assert timeline.state is PositionState.AROUND
        assert timeline.current_index == 1
        assert timeline.get_current() is None
        assert timeline.get_prev().start == 10
        assert timeline.get_next().start == 20

    def test_end_is_exclusive(self, timeline):
        """Test that an entry is not showing at its end time."""
        timeline.set_current_time(5)
        assert timeline.state is PositionState.AROUND
        assert timeline.current_index == 0

    def test_start_is_inclusive(self, timeline):
        """Test that an entry is showing at its start time."""
        timeline.set_current_time(10)
        assert timeline.state is PositionState.SHOWING
        assert timeline.current_index == 1

    def test_end_of_last_entry_still_showing(self, timeline):
        """Test the last entry at exactly its end time."""
        timeline.set_current_time(35)
        assert timeline.state is PositionState.SHOWING
        assert timeline.current_index == 4

    def test_after_last_entry(self, timeline):
        """Test a time after the last entry."""
        timeline.set_current_time(99)
        assert timeline.state is PositionState.LAST
        assert timeline.current_index == 4
        assert timeline.get_current() is None
        assert timeline.get_next() is None
        assert timeline.get_prev().start == 30

    def test_first_entry_has_no_prev(self, timeline):
        """Test get_prev while the first entry is showing."""
        timeline.set_current_time(2)
        assert timeline.get_prev() is None

    def test_backward_move(self, timeline):
        """Test that the cursor follows the clock backwards."""
        timeline.set_current_time(31)
        timeline.set_current_time(11)
        assert timeline.current_index == 1
        assert timeline.state is PositionState.SHOWING

    def test_empty_timeline_queries(self):
        """Test queries on an empty timeline."""
        tl = SubtitleTimeline(0)
        tl.set_current_time(3)
        assert tl.get_current() is None
        assert tl.get_next() is None
        assert tl.get_prev() is None

    def test_matches_linear_scan(self, timeline):
        """Test the cursor against a linear scan over a grid of times."""
        spans = list(FIVE)
        t = -1.0
        while t < 40:
            timeline.set_current_time(t)
            covering = [i for i, (s, e) in enumerate(spans) if s <= t < e]
            if covering:
                assert timeline.get_current().start == spans[covering[0]][0]
            elif t == spans[-1][1]:
                assert timeline.state is PositionState.SHOWING
            else:
                assert timeline.get_current() is None
            t += 0.25


class TestDelay:
    """Tests for the slot delay."""

    def test_delay_is_subtracted(self):
        """Test that a positive delay shows entries later."""
        tl = SubtitleTimeline(0, SlotConfig(delay=0.5))
        tl.load(entries(*FIVE))
        tl.set_current_time(1.2)
        assert tl.state is PositionState.FIRST
        tl.set_current_time(1.5)
        assert tl.state is PositionState.SHOWING
        assert tl.current_index == 0

    def test_delay_equals_shifted_entries(self):
        """Test that delay d behaves like entries shifted by +d."""
        d = 0.5
        delayed = SubtitleTimeline(0, SlotConfig(delay=d))
        delayed.load(entries(*FIVE))
        shifted = SubtitleTimeline(1, SlotConfig())
        shifted.load(entries(*[(s + d, e + d) for s, e in FIVE]))
        t = 0.0
        while t < 40:
            delayed.set_current_time(t)
            shifted.set_current_time(t)
            assert delayed.state is shifted.state, t
            assert delayed.current_index == shifted.current_index, t
            t += 0.125

    def test_refresh_applies_new_delay(self):
        """Test that refresh re-evaluates with a changed delay."""
        cfg = SlotConfig()
        tl = SubtitleTimeline(0, cfg)
        tl.load(entries(*FIVE))
        tl.set_current_time(10.2)
        assert tl.state is PositionState.SHOWING
        cfg.delay = 0.5
        tl.refresh()
        assert tl.state is PositionState.AROUND
        assert tl.current_index == 0


class TestDeleteAfter:
    """Tests for delete_after."""

    @pytest.mark.parametrize("t, kept", [(20, 2), (3, 0), (32, 4), (36, 5)])
    def test_kept_prefix(self, timeline, t, kept):
        """Test how many entries survive for a cut time."""
        timeline.delete_after(t)
        assert len(timeline) == kept
        assert all(e.end < t for e in timeline.entries)

    def test_cursor_reset(self, timeline):
        """Test that a deletion resets the cursor."""
        timeline.set_current_time(31)
        timeline.delete_after(20)
        assert timeline.current_index == -1
        assert timeline.state is PositionState.FIRST

    def test_removed_bitmaps_disposed(self):
        """Test that removed entries release their bitmaps."""
        arena = BitmapArena()
        tl = SubtitleTimeline(0)
        items = entries(*FIVE)
        for e in items:
            e.bitmap = arena.store(small_image())
        tl.load(items)
        tl.delete_after(20)
        assert arena.live_count == 2
        assert arena.released == 3


class TestMutation:
    """Tests for add, load, sort, clear and updates."""

    def test_add_assigns_index(self):
        """Test that add numbers entries in insertion order."""
        tl = SubtitleTimeline(0)
        for e in entries((0, 1), (2, 3)):
            tl.add(e)
        assert [e.index for e in tl.entries] == [0, 1]

    def test_add_range_keeps_order(self, timeline):
        """Test that appended entries stay sorted."""
        timeline.add_range(entries((40, 41), (42, 43)))
        starts = [e.start for e in timeline.entries]
        assert starts == sorted(starts)
        assert timeline[-1].index == 6

    def test_sort_reorders_and_reindexes(self):
        """Test sort on entries added out of order."""
        tl = SubtitleTimeline(0)
        tl.add_range(entries((20, 21), (1, 2), (10, 11)))
        tl.sort()
        assert [e.start for e in tl.entries] == [1, 10, 20]
        assert [e.index for e in tl.entries] == [0, 1, 2]

    def test_load_replaces_and_disposes(self):
        """Test that load disposes the previous entries."""
        arena = BitmapArena()
        old = SubtitleEntry(0, 1, is_bitmap=True, bitmap=arena.store(small_image()))
        tl = SubtitleTimeline(0)
        tl.add(old)
        tl.load(entries((5, 6)))
        assert len(tl) == 1
        assert arena.live_count == 0
        assert old.bitmap is None

    def test_clear_forgets_language(self, timeline):
        """Test that clear resets the source language and cursor."""
        timeline.language_source = get_language("ja")
        timeline.set_current_time(12)
        timeline.clear()
        assert len(timeline) == 0
        assert timeline.language_source is None
        assert timeline.current_index == -1

    def test_language_fallback(self):
        """Test that an unknown source falls back to the slot setting."""
        tl = SubtitleTimeline(0, SlotConfig(language_fallback="de"))
        assert tl.language.code == "de"
        tl.language_source = get_language("fr")
        assert tl.language.code == "fr"

    def test_update_translation_uses_slot_flag(self, timeline):
        """Test that translated text is displayed when enabled."""
        timeline.config.enabled_translated = True
        e = timeline[0]
        timeline.update_translation(e, "hola")
        assert e.display_text == "hola"

    def test_entries_is_a_copy(self, timeline):
        """Test that the snapshot list cannot mutate the store."""
        snap = timeline.entries
        snap.clear()
        assert len(timeline) == 5


class TestEvents:
    """Tests for published events."""

    def test_mutations_publish(self):
        """Test that add and language changes publish events."""
        ch = EventChannel()
        q = ch.subscribe()
        tl = SubtitleTimeline(1, events=ch)
        tl.add(SubtitleEntry(0, 1, text="a"))
        tl.language_source = get_language("en")
        kinds = [ev.kind for ev in drain(q)]
        assert kinds == [EventKind.ENTRIES_CHANGED, EventKind.LANGUAGE_DETECTED]

    def test_current_changed_only_on_index_change(self, timeline):
        """Test that staying on an entry publishes nothing."""
        ch = EventChannel()
        timeline.events = ch
        q = ch.subscribe()
        timeline.set_current_time(11)
        timeline.set_current_time(12)
        timeline.set_current_time(13)
        events = drain(q)
        assert [ev.kind for ev in events] == [EventKind.CURRENT_CHANGED]
        assert events[0].value == 1
        assert events[0].slot == 0

    def test_loading_nests(self):
        """Test that nested loading blocks publish one transition each way."""
        ch = EventChannel()
        q = ch.subscribe()
        tl = SubtitleTimeline(0, events=ch)
        with tl.loading():
            with tl.loading():
                assert tl.is_loading
            assert tl.is_loading
        assert not tl.is_loading
        values = [ev.value for ev in drain(q) if ev.kind is EventKind.LOADING_CHANGED]
        assert values == [True, False]
