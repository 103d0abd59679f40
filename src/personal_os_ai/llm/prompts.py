"""Prompt templates for the chat gateway."""

import json
from typing import Any, Dict, List, Optional


ASSISTANT_BASE_PROMPT = "You are an AI assistant for {user_name}'s Personal Operating System."

ASSISTANT_CLOSING = "Provide helpful, specific, and actionable advice based on this data."

PRODUCTIVITY_PROMPT = """Focus on productivity, task management, and project progress. Help with prioritization, time management, and completion strategies.

Current Productivity Status:
- Tasks: {tasks_total} total ({tasks_overdue} overdue, {tasks_due_today} due today)
- Projects: {projects_total} total ({projects_active} active, avg {projects_avg_completion}% complete)"""

FINANCE_PROMPT = """Focus on financial health, budgeting, and money management. Provide insights on spending patterns and financial goals.

Current Financial Status:
- Budgets: {budgets_total} active budgets
- Total Budget: ${budgets_amount}
- Total Spent: ${budgets_spent}
- Remaining: ${budgets_remaining}"""

LEARNING_PROMPT = """Focus on skill development, learning progress, and educational growth. Help with learning strategies and skill advancement.

Current Learning Status:
- Skills: {skills_total} total ({skills_learning} actively learning, {skills_mastered} mastered)
- Reading: {reading_total} books ({reading_current} currently reading)"""

GOALS_PROMPT = """Focus on goal setting, achievement strategies, and long-term planning. Help with goal prioritization and progress tracking.

Current Goals Status:
- Goals: {goals_total} total ({goals_active} active, {goals_achieved} achieved)"""

GENERAL_PROMPT = """You have access to comprehensive personal data across productivity, finances, learning, and goals.

Overall Status:
- Tasks: {tasks_total} ({tasks_overdue} overdue)
- Projects: {projects_total} ({projects_active} active)
- Skills: {skills_total} ({skills_learning} learning)
- Goals: {goals_total} ({goals_active} active)"""


SUMMARY_SYSTEM_PROMPT = (
    "Summarize this conversation focusing on key decisions, insights, and action items. "
    "Keep it concise but informative."
)


ANALYSIS_SYSTEM_PROMPT = (
    "You are an expert analyst for personal development and life management. "
    "Analyze the provided data and give specific, actionable insights."
)

ANALYSIS_INSTRUCTIONS = {
    "productivity": "Analyze productivity patterns, completion rates, and suggest improvements for task and project management.",
    "goals": "Analyze goal progress, identify roadblocks, and suggest strategies for achievement.",
    "learning": "Analyze learning progress, skill development, and reading habits. Suggest learning paths.",
    "finance": "Analyze financial health, spending patterns, and budget adherence. Provide financial advice.",
    "general": "Provide a comprehensive analysis of overall life management and progress across all areas.",
}

ANALYSIS_USER_PROMPT = """{instruction}
{specific}
Timeframe: {timeframe}

Data: {data}

Provide detailed analysis with specific recommendations, patterns identified, and actionable next steps."""


DAILY_BRIEF_SYSTEM_PROMPT = (
    "Generate a personalized daily brief for {user_name}. "
    "Be encouraging, specific, and actionable."
)

DAILY_BRIEF_USER_PROMPT = "Create a daily brief based on:\n{data}"


def _get(data: Optional[Dict[str, Any]], *path: str) -> Any:
    """Walk nested dicts, returning 0 for anything missing."""
    current: Any = data or {}
    for key in path:
        if not isinstance(current, dict):
            return 0
        current = current.get(key)
    return current if current is not None else 0


def format_entity_context(entities: Dict[str, List[Dict[str, Any]]]) -> str:
    """Render matched entities as a ``type: name, name`` block."""
    lines = []
    for entity_type, matches in entities.items():
        if matches:
            names = ", ".join(m.get("title") or m.get("name") or "" for m in matches)
            lines.append(f"{entity_type}: {names}")
    if not lines:
        return ""
    return "\n\nRelevant entities mentioned:\n" + "\n".join(lines)


def format_context_section(context: str, summary: Dict[str, Any]) -> str:
    """Render the status block for one summary context."""
    if context == "productivity":
        return PRODUCTIVITY_PROMPT.format(
            tasks_total=_get(summary, "tasks", "total"),
            tasks_overdue=_get(summary, "tasks", "overdue"),
            tasks_due_today=_get(summary, "tasks", "dueToday"),
            projects_total=_get(summary, "projects", "total"),
            projects_active=_get(summary, "projects", "active"),
            projects_avg_completion=_get(summary, "projects", "avgCompletion"),
        )
    if context == "finance":
        return FINANCE_PROMPT.format(
            budgets_total=_get(summary, "budgets", "total"),
            budgets_amount=_get(summary, "budgets", "totalAmount"),
            budgets_spent=_get(summary, "budgets", "totalSpent"),
            budgets_remaining=_get(summary, "budgets", "remaining"),
        )
    if context == "learning":
        return LEARNING_PROMPT.format(
            skills_total=_get(summary, "skills", "total"),
            skills_learning=_get(summary, "skills", "learning"),
            skills_mastered=_get(summary, "skills", "mastered"),
            reading_total=_get(summary, "reading", "total"),
            reading_current=_get(summary, "reading", "currentlyReading"),
        )
    if context == "goals":
        return GOALS_PROMPT.format(
            goals_total=_get(summary, "total"),
            goals_active=_get(summary, "active"),
            goals_achieved=_get(summary, "achieved"),
        )
    return GENERAL_PROMPT.format(
        tasks_total=_get(summary, "productivity", "tasks", "total"),
        tasks_overdue=_get(summary, "productivity", "tasks", "overdue"),
        projects_total=_get(summary, "productivity", "projects", "total"),
        projects_active=_get(summary, "productivity", "projects", "active"),
        skills_total=_get(summary, "learning", "skills", "total"),
        skills_learning=_get(summary, "learning", "skills", "learning"),
        goals_total=_get(summary, "goals", "total"),
        goals_active=_get(summary, "goals", "active"),
    )


def build_system_prompt(
    user_name: str,
    context: str,
    summary: Dict[str, Any],
    entities: Optional[Dict[str, List[Dict[str, Any]]]] = None,
) -> str:
    """Assemble the system message from a domain summary and entity matches."""
    section = format_context_section(context, summary)
    section += format_entity_context(entities or {})
    return "\n\n".join([
        ASSISTANT_BASE_PROMPT.format(user_name=user_name),
        section,
        ASSISTANT_CLOSING,
    ])


def build_analysis_prompt(
    area: str,
    data: Dict[str, Any],
    timeframe: str = "month",
    specific: Optional[str] = None,
) -> str:
    instruction = ANALYSIS_INSTRUCTIONS.get(area, ANALYSIS_INSTRUCTIONS["general"])
    return ANALYSIS_USER_PROMPT.format(
        instruction=instruction,
        specific=f"Focus: {specific}\n" if specific else "",
        timeframe=timeframe,
        data=json.dumps(data, indent=2, default=str),
    )


def format_transcript(messages: List[Dict[str, str]]) -> str:
    """``role: content`` lines, used as the summarizer input."""
    return "\n".join(f"{m['role']}: {m['content']}" for m in messages)
