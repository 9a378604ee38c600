#!/usr/bin/env python3
"""Action registry for subtitle commands.

Built-in actions are keyed by ActionTag; user-defined actions are
CustomAction values keyed by name. Both are registered once and invoked by
key, typically from a key-binding layer outside this package.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Union

from .navigation import SeekTarget, cur_seek_target, next_seek_target, prev_seek_target

if TYPE_CHECKING:
    from .session import SubtitleSession


class ActionTag(enum.Enum):
    """Built-in subtitle actions."""
    SUBS_PREV_SEEK = "subs_prev_seek"
    SUBS_CUR_SEEK = "subs_cur_seek"
    SUBS_NEXT_SEEK = "subs_next_seek"
    SUBS_PREV_SEEK_FALLBACK = "subs_prev_seek_fallback"
    SUBS_NEXT_SEEK_FALLBACK = "subs_next_seek_fallback"
    DELAY_ADD_PRIMARY = "delay_add_primary"
    DELAY_REMOVE_PRIMARY = "delay_remove_primary"
    DELAY_ADD_SECONDARY = "delay_add_secondary"
    DELAY_REMOVE_SECONDARY = "delay_remove_secondary"
    RESET_PRIMARY = "reset_primary"
    RESET_SECONDARY = "reset_secondary"
    TOGGLE_TRANSLATED_PRIMARY = "toggle_translated_primary"
    TOGGLE_TRANSLATED_SECONDARY = "toggle_translated_secondary"


@dataclass(frozen=True)
class CustomAction:
    """A user-defined action: a name plus the callable it runs."""
    name: str
    fn: Callable[[], object]


ActionKey = Union[ActionTag, str]


class ActionRegistry:
    """Maps action tags and custom action names to callables."""

    def __init__(self) -> None:
        self._builtin: Dict[ActionTag, Callable[[], object]] = {}
        self._custom: Dict[str, CustomAction] = {}

    def register(self, tag: ActionTag, fn: Callable[[], object]) -> None:
        self._builtin[tag] = fn

    def register_custom(self, action: CustomAction) -> None:
        """Raises:
            ValueError: If the name collides with a built-in tag value
        """
        if action.name in {t.value for t in ActionTag}:
            raise ValueError(f"custom action name shadows a built-in action: {action.name}")
        self._custom[action.name] = action

    def __contains__(self, key: ActionKey) -> bool:
        if isinstance(key, ActionTag):
            return key in self._builtin
        return key in self._custom

    def names(self) -> List[str]:
        return [t.value for t in self._builtin] + list(self._custom)

    def invoke(self, key: ActionKey) -> object:
        """Run the action registered for key and return its result.

        Raises:
            KeyError: If nothing is registered for key
        """
        if isinstance(key, ActionTag):
            fn = self._builtin.get(key)
            if fn is None:
                raise KeyError(f"action not registered: {key.value}")
            return fn()
        custom = self._custom.get(key)
        if custom is None:
            raise KeyError(f"unknown custom action: {key}")
        return custom.fn()


def build_default_registry(
    session: "SubtitleSession",
    clock: Callable[[], float],
    seek: Callable[[float], None],
    *,
    seek_fallback: float = 5.0,
    delay_step: float = 0.1,
) -> ActionRegistry:
    """Wire the built-in actions to a session.

    Seek actions follow the primary slot.

    Args:
        session: Session whose timelines and settings the actions use
        clock: Returns the current playback time in seconds
        seek: Called with the playback time to seek to
        seek_fallback: Step in seconds when there is no subtitle to seek to
        delay_step: Delay change in seconds per invocation

    Returns:
        Registry with every ActionTag registered
    """
    reg = ActionRegistry()
    primary = session[0]

    def do_seek(target: Optional[SeekTarget]) -> bool:
        if target is None:
            return False
        seek(target.time)
        return True

    reg.register(ActionTag.SUBS_PREV_SEEK, lambda: do_seek(prev_seek_target(primary)))
    reg.register(ActionTag.SUBS_NEXT_SEEK, lambda: do_seek(next_seek_target(primary)))
    reg.register(ActionTag.SUBS_CUR_SEEK, lambda: do_seek(cur_seek_target(primary)))
    reg.register(ActionTag.SUBS_PREV_SEEK_FALLBACK,
                 lambda: do_seek(prev_seek_target(primary, clock(), seek_fallback)))
    reg.register(ActionTag.SUBS_NEXT_SEEK_FALLBACK,
                 lambda: do_seek(next_seek_target(primary, clock(), seek_fallback)))

    def shift_delay(slot: int, step: float) -> float:
        cfg = session.config.slots[slot]
        cfg.delay = round(cfg.delay + step, 6)
        session[slot].refresh()
        return cfg.delay

    reg.register(ActionTag.DELAY_ADD_PRIMARY, lambda: shift_delay(0, delay_step))
    reg.register(ActionTag.DELAY_REMOVE_PRIMARY, lambda: shift_delay(0, -delay_step))
    reg.register(ActionTag.DELAY_ADD_SECONDARY, lambda: shift_delay(1, delay_step))
    reg.register(ActionTag.DELAY_REMOVE_SECONDARY, lambda: shift_delay(1, -delay_step))

    reg.register(ActionTag.RESET_PRIMARY, lambda: session.reset(0))
    reg.register(ActionTag.RESET_SECONDARY, lambda: session.reset(1))

    def toggle_translated(slot: int) -> bool:
        cfg = session.config.slots[slot]
        cfg.enabled_translated = not cfg.enabled_translated
        timeline = session[slot]
        with timeline.lock:
            for e in timeline.entries:
                e.use_translated = cfg.enabled_translated
        return cfg.enabled_translated

    reg.register(ActionTag.TOGGLE_TRANSLATED_PRIMARY, lambda: toggle_translated(0))
    reg.register(ActionTag.TOGGLE_TRANSLATED_SECONDARY, lambda: toggle_translated(1))
    return reg
