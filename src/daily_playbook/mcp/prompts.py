"""MCP prompt templates for planning the day."""

from daily_playbook.mcp.server import mcp


@mcp.prompt()
def plan_day(focus: str = "") -> str:
    """Generate a prompt to fill today's playbook from the buckets."""
    extra = f"Today I especially want to focus on: {focus}\n\n" if focus else ""
    return (
        f"Help me plan today's playbook.\n\n"
        f"{extra}"
        f"Use get_board to see every bucket and the eight playbook slots. Then:\n"
        f"1. Pick the tasks that matter most today, favouring high priority work\n"
        f"2. Keep a balance across buckets unless I asked for a specific focus\n"
        f"3. Stage them into the empty slots with stage_task, most important first\n"
        f"4. Suggest a sprint length for each (set_timer takes minutes)\n\n"
        f"Finish with a short summary of the plan, slot by slot."
    )


@mcp.prompt()
def break_down(task_id: str) -> str:
    """Generate a prompt to split a large task into smaller ones."""
    return (
        f"The task '{task_id}' feels too big for one sprint.\n\n"
        f"Use get_task to read it, then break it into 2-5 concrete tasks that each fit "
        f"in a single focused sprint. Create them with create_task in the same bucket, "
        f"and delete the original with delete_task only if the new tasks fully cover it."
    )


@mcp.prompt()
def daily_review() -> str:
    """Generate a prompt for an end-of-day review."""
    return (
        f"Let's wrap up the day.\n\n"
        f"Use get_board to see the playbook and the buckets, and get_task on today's "
        f"slot tasks to read their log entries. Then tell me:\n"
        f"1. What got done\n"
        f"2. What is still staged and whether to return it to its bucket\n"
        f"3. Any bucket that got no attention today\n"
        f"4. The three tasks to start with tomorrow"
    )


@mcp.prompt()
def good_morning() -> str:
    """Generate a warm greeting to start the day."""
    return (
        f"I'm starting my day. Use get_board to see what's in my buckets and what's "
        f"already staged in today's playbook.\n\n"
        f"Then write a short, warm and genuinely funny greeting (2-4 sentences) that "
        f"references something specific on my board and ends with a quick count: "
        f"X slots filled, Y high priority tasks waiting.\n\n"
        f"Keep it concise. No bulleted lists. Just a natural, friendly paragraph."
    )
