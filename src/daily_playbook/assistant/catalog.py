"""The fixed catalog of actions the assistant may take, and its prompts."""

import json

from daily_playbook.db.models import BUCKET_IDS, PRIORITIES, SLOT_COUNT

GREETING = (
    "I'm your Strategy Assistant. I can help you break down tasks, prioritize your day, "
    "or brainstorm on any of your 8 business pillars. What would you like to work on?"
)

SYSTEM_PROMPT = """You are the Daily Playbook assistant, a strategic productivity partner that can TAKE ACTIONS on the user's task board.

You have tools to create, rename, delete, move and prioritize tasks, and to stage tasks into the numbered slots of today's playbook. When the user asks for something actionable, USE THE TOOLS. Don't explain how to do it, do it.

Be direct, concise and action-oriented. After taking actions, confirm what you did in a brief, friendly way."""

FOLLOW_UP_PROMPT = "Briefly confirm to the user what was just done, in one or two sentences."


def _function(name: str, description: str, properties: dict, required: list[str]) -> dict:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
                "additionalProperties": False,
            },
        },
    }


_BUCKET = {"type": "string", "enum": BUCKET_IDS}
_PRIORITY = {"type": "string", "enum": list(PRIORITIES)}

TOOLS = [
    _function(
        "create_tasks",
        "Create one or more new tasks in a bucket. Use this when the user asks to add or create tasks.",
        {
            "tasks": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "title": {"type": "string", "description": "Task title"},
                        "bucket_id": {**_BUCKET, "description": "Which bucket to put the task in"},
                        "priority": {**_PRIORITY, "description": "Task priority, default medium"},
                        "description": {"type": "string", "description": "Optional task notes"},
                    },
                    "required": ["title", "bucket_id"],
                    "additionalProperties": False,
                },
            },
        },
        ["tasks"],
    ),
    _function(
        "rename_task",
        "Rename an existing task. Use when the user asks to change a task's name or title.",
        {
            "task_id": {"type": "string", "description": "The task ID to rename"},
            "new_title": {"type": "string", "description": "The new title"},
        },
        ["task_id", "new_title"],
    ),
    _function(
        "delete_tasks",
        "Delete one or more tasks. Use when the user asks to remove or delete tasks.",
        {
            "task_ids": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Task IDs to delete",
            },
        },
        ["task_ids"],
    ),
    _function(
        "move_task_to_slot",
        "Move a task from a bucket into today's playbook. Use when the user wants a task in today's focus.",
        {
            "task_id": {"type": "string", "description": "The task ID to move"},
            "slot_number": {
                "type": "integer",
                "minimum": 1,
                "maximum": SLOT_COUNT,
                "description": f"Playbook slot 1-{SLOT_COUNT}",
            },
        },
        ["task_id", "slot_number"],
    ),
    _function(
        "update_task_priority",
        "Change a task's priority. Use when the user asks to change priority.",
        {"task_id": {"type": "string"}, "priority": _PRIORITY},
        ["task_id", "priority"],
    ),
    _function(
        "move_task_to_bucket",
        "Move a task to a different bucket. Use when the user asks to move a task between buckets.",
        {"task_id": {"type": "string"}, "new_bucket_id": _BUCKET},
        ["task_id", "new_bucket_id"],
    ),
]

TOOL_NAMES = [t["function"]["name"] for t in TOOLS]


def build_system_prompt(context: dict | None) -> str:
    """System prompt with the live board attached."""
    if not context:
        return SYSTEM_PROMPT
    return (
        f"{SYSTEM_PROMPT}\n\nHere is the current state of the user's task board:\n"
        f"{json.dumps(context, indent=2)}"
    )
