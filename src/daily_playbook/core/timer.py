"""Per-slot timer state machine.

States: idle, running, paused, logging. Every function returns a new
``PlaybookSlot`` and leaves its argument untouched.
"""

from dataclasses import replace

from daily_playbook.db.models import LOG_WARNING_SECONDS, PlaybookSlot
from daily_playbook.errors import ValidationError


def reset(slot: PlaybookSlot) -> PlaybookSlot:
    """Empty the slot and rewind its timer to a full sprint."""
    return replace(slot, task=None, timer_state="idle", time_remaining=slot.sprint_duration)


def stage(slot: PlaybookSlot, task) -> PlaybookSlot:
    return replace(slot, task=task, timer_state="idle", time_remaining=slot.sprint_duration)


def start(slot: PlaybookSlot) -> PlaybookSlot:
    """idle|paused -> running."""
    if slot.task is None:
        raise ValidationError(f"Slot {slot.slot_number} is empty")
    if slot.timer_state == "logging":
        raise ValidationError(
            f"Slot {slot.slot_number} is waiting for a status log"
        )
    if slot.timer_state == "running":
        return slot
    return replace(slot, timer_state="running")


def pause(slot: PlaybookSlot) -> PlaybookSlot:
    """running -> paused; anything else is left alone."""
    if slot.timer_state != "running":
        return slot
    return replace(slot, timer_state="paused")


def crossed_threshold(old: int, new: int) -> bool:
    return (old > LOG_WARNING_SECONDS and new <= LOG_WARNING_SECONDS) or new == 0


def tick(slot: PlaybookSlot) -> tuple[PlaybookSlot, bool]:
    """Advance a running slot by one second.

    Returns the new slot and whether it just entered ``logging``.
    """
    if slot.timer_state != "running":
        return slot, False
    new_time = max(0, slot.time_remaining - 1)
    if crossed_threshold(slot.time_remaining, new_time):
        return replace(slot, time_remaining=new_time, timer_state="logging"), True
    return replace(slot, time_remaining=new_time), False


def set_duration(slot: PlaybookSlot, seconds: int) -> PlaybookSlot:
    """Set the remaining time directly, clamped to [0, sprint_duration]."""
    seconds = max(0, min(int(seconds), slot.sprint_duration))
    return replace(slot, time_remaining=seconds)


def apply_preset(slot: PlaybookSlot, seconds: int) -> PlaybookSlot:
    """Pick a sprint length. A running sprint keeps its total."""
    seconds = int(seconds)
    if seconds <= 0:
        raise ValidationError("Sprint duration must be positive")
    if slot.timer_state == "running":
        return set_duration(slot, seconds)
    return replace(slot, sprint_duration=seconds, time_remaining=seconds)


def skip(slot: PlaybookSlot, delta: int) -> PlaybookSlot:
    return set_duration(slot, slot.time_remaining + int(delta))


def scrub(slot: PlaybookSlot, fraction: float) -> PlaybookSlot:
    """Drag the progress bar: fraction 0 is a fresh sprint, 1 is finished."""
    fraction = max(0.0, min(1.0, float(fraction)))
    return replace(
        slot,
        time_remaining=slot.sprint_duration - round(fraction * slot.sprint_duration),
    )


def progress(slot: PlaybookSlot) -> float:
    if slot.sprint_duration <= 0:
        return 0.0
    return (slot.sprint_duration - slot.time_remaining) / slot.sprint_duration


def format_time(seconds: int) -> str:
    m, s = divmod(max(0, seconds), 60)
    return f"{m:02d}:{s:02d}"
