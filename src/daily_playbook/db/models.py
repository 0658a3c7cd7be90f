"""Data models for the daily playbook."""

from dataclasses import dataclass, field
from datetime import datetime

BUCKETS: list[tuple[str, str]] = [
    ("finance", "Finance"),
    ("admin", "Admin/Ops"),
    ("content", "Content"),
    ("ads", "Ads"),
    ("product", "Product Dev"),
    ("website", "Website/UX"),
    ("branding", "Branding"),
    ("music", "Music"),
]
BUCKET_IDS = [b[0] for b in BUCKETS]

PRIORITIES = ("low", "medium", "high")
COLUMNS = ("todo", "in-progress", "done")
TIMER_STATES = ("idle", "running", "paused", "logging")

SLOT_COUNT = 8
DEFAULT_SPRINT_SECONDS = 3600
LOG_WARNING_SECONDS = 300
DURATION_PRESETS = [15 * 60, 25 * 60, 30 * 60, 45 * 60, 60 * 60, 90 * 60]


@dataclass
class Subtask:
    id: int | None = None
    text: str = ""
    checked: bool = False


@dataclass
class TaskLink:
    id: int | None = None
    url: str = ""
    label: str = ""


@dataclass
class TaskLogEntry:
    id: int | None = None
    task_id: str = ""
    text: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Task:
    id: str
    title: str
    bucket_id: str
    user_id: str = "local"
    notes: str = ""
    priority: str = "medium"
    column: str = "todo"
    created_at: datetime | None = None
    updated_at: datetime | None = None
    subtasks: list[Subtask] = field(default_factory=list)
    links: list[TaskLink] = field(default_factory=list)
    log_entries: list[TaskLogEntry] = field(default_factory=list)


@dataclass
class PlaybookSlot:
    slot_number: int
    task: Task | None = None
    timer_state: str = "idle"
    time_remaining: int = DEFAULT_SPRINT_SECONDS
    sprint_duration: int = DEFAULT_SPRINT_SECONDS

    @property
    def is_empty(self) -> bool:
        return self.task is None
