"""
Domain summaries for prompt context.

Each SummaryContext has one builder that turns the user's records into a
compact, JSON-friendly snapshot. The general context combines the other
four. Records are read through DomainRecordSource off the event loop.
"""

import asyncio
import logging
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..exceptions import ValidationError
from ..storage.domain_records import DomainRecordSource
from .base import BaseService, ServiceResult


logger = logging.getLogger(__name__)


class SummaryContext(str, Enum):
    """Named views over the user's data."""

    GENERAL = "general"
    PRODUCTIVITY = "productivity"
    FINANCE = "finance"
    LEARNING = "learning"
    GOALS = "goals"


CONTEXT_CATALOG: List[Dict[str, str]] = [
    {
        "id": SummaryContext.GENERAL.value,
        "name": "General Overview",
        "description": "Comprehensive view across all areas",
    },
    {
        "id": SummaryContext.PRODUCTIVITY.value,
        "name": "Productivity Focus",
        "description": "Tasks, projects, and time management",
    },
    {
        "id": SummaryContext.FINANCE.value,
        "name": "Financial Focus",
        "description": "Budgets, spending, and money management",
    },
    {
        "id": SummaryContext.LEARNING.value,
        "name": "Learning & Development",
        "description": "Skills, courses, and personal growth",
    },
    {
        "id": SummaryContext.GOALS.value,
        "name": "Goals & Planning",
        "description": "Goal progress and achievement strategies",
    },
]

# Keyword counts pick the context for a message; ties go to the earlier entry
CONTEXT_KEYWORDS: Dict[SummaryContext, List[str]] = {
    SummaryContext.PRODUCTIVITY: [
        "task", "project", "deadline", "overdue", "complete", "todo", "productivity", "work",
    ],
    SummaryContext.FINANCE: [
        "budget", "money", "spend", "income", "financial", "cost", "expense", "save",
    ],
    SummaryContext.LEARNING: [
        "skill", "learn", "book", "read", "study", "course", "practice", "develop",
    ],
    SummaryContext.GOALS: [
        "goal", "achieve", "target", "objective", "plan", "milestone", "progress",
    ],
}

ACTIVE_PROJECT_STATUSES = ("planning", "active")
ACTIVE_SKILL_STATUSES = ("learning", "practicing")
ACTIVE_GOAL_STATUSES = ("not_started", "in_progress")
CLOSED_TASK_STATUSES = ("completed", "cancelled")


def parse_context(value: str) -> SummaryContext:
    """Map a path/body value to a SummaryContext, 400 on anything else."""
    try:
        return SummaryContext(value)
    except ValueError:
        raise ValidationError(
            "Invalid context",
            field="context",
            details={"validContexts": [c.value for c in SummaryContext]},
        )


def analyze_message_context(message: str) -> SummaryContext:
    """Pick the context whose keywords occur most often in the message."""
    text = message.lower()
    best = SummaryContext.GENERAL
    best_score = 0
    for context, keywords in CONTEXT_KEYWORDS.items():
        score = sum(1 for keyword in keywords if keyword in text)
        if score > best_score:
            best_score = score
            best = context
    return best


def _number(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _parse_date(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ============================================================================
# Builders
# ============================================================================

def build_productivity_summary(
    tasks: List[Dict[str, Any]],
    projects: List[Dict[str, Any]],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    today = now.date()

    overdue = []
    due_today = []
    for task in tasks:
        deadline = _parse_date(task.get("deadline"))
        if deadline is None:
            continue
        if deadline.date() == today:
            due_today.append(task)
        if deadline < now and task.get("status") not in CLOSED_TASK_STATUSES:
            overdue.append(task)

    active_projects = [p for p in projects if p.get("status") in ACTIVE_PROJECT_STATUSES]
    completions = [_number(p.get("completionPercentage")) for p in projects]

    return {
        "tasks": {
            "total": len(tasks),
            "completed": sum(1 for t in tasks if t.get("status") == "completed"),
            "inProgress": sum(1 for t in tasks if t.get("status") == "in_progress"),
            "overdue": len(overdue),
            "dueToday": len(due_today),
            "overdueList": [{"title": t.get("title"), "deadline": t.get("deadline")} for t in overdue[:5]],
            "todayList": [{"title": t.get("title"), "deadline": t.get("deadline")} for t in due_today[:5]],
        },
        "projects": {
            "total": len(projects),
            "active": len(active_projects),
            "completed": sum(1 for p in projects if p.get("status") == "completed"),
            "avgCompletion": round(sum(completions) / len(completions)) if completions else 0,
            "activeProjects": [
                {
                    "title": p.get("title"),
                    "completion": _number(p.get("completionPercentage")),
                    "status": p.get("status"),
                }
                for p in active_projects[:3]
            ],
        },
    }


def build_finance_summary(
    budgets: List[Dict[str, Any]],
    income: List[Dict[str, Any]],
) -> Dict[str, Any]:
    total_budget = sum(_number(b.get("amount")) for b in budgets)
    total_spent = sum(_number(b.get("spent")) for b in budgets)
    total_income = sum(_number(i.get("amount")) for i in income)

    return {
        "budgets": {
            "total": len(budgets),
            "totalAmount": total_budget,
            "totalSpent": total_spent,
            "remaining": total_budget - total_spent,
            "overBudget": sum(1 for b in budgets if _number(b.get("spentPercentage")) > 100),
            "categories": [
                {
                    "category": b.get("category"),
                    "spent": _number(b.get("spent")),
                    "amount": _number(b.get("amount")),
                    "percentage": _number(b.get("spentPercentage")),
                }
                for b in budgets
            ],
        },
        "income": {
            "recentEntries": len(income),
            "totalRecent": total_income,
            "lastEntry": (
                {"amount": _number(income[0].get("amount")), "date": income[0].get("date")}
                if income else None
            ),
        },
    }


def build_learning_summary(
    skills: List[Dict[str, Any]],
    readings: List[Dict[str, Any]],
) -> Dict[str, Any]:
    active_skills = [s for s in skills if s.get("status") in ACTIVE_SKILL_STATUSES]
    current_books = [r for r in readings if r.get("status") == "reading"]

    return {
        "skills": {
            "total": len(skills),
            "learning": len(active_skills),
            "mastered": sum(1 for s in skills if s.get("status") == "mastered"),
            "categories": sorted({s.get("category") for s in skills if s.get("category")}),
            "activeSkills": [
                {
                    "name": s.get("name"),
                    "level": s.get("currentLevel"),
                    "progress": _number(s.get("progressPercentage")),
                }
                for s in active_skills[:5]
            ],
        },
        "reading": {
            "total": len(readings),
            "currentlyReading": len(current_books),
            "completed": sum(1 for r in readings if r.get("status") == "completed"),
            "genres": sorted({r.get("genre") for r in readings if r.get("genre")}),
            "currentBooks": [
                {
                    "title": r.get("title"),
                    "author": r.get("author"),
                    "progress": _number(r.get("progressPercentage")),
                }
                for r in current_books[:3]
            ],
        },
    }


def build_goals_summary(goals: List[Dict[str, Any]]) -> Dict[str, Any]:
    active = [g for g in goals if g.get("status") in ACTIVE_GOAL_STATUSES]
    return {
        "total": len(goals),
        "active": len(active),
        "achieved": sum(1 for g in goals if g.get("status") == "achieved"),
        "categories": sorted({g.get("category") for g in goals if g.get("category")}),
        "activeGoals": [
            {
                "title": g.get("title"),
                "category": g.get("category"),
                "status": g.get("status"),
                "deadline": g.get("deadline"),
            }
            for g in active[:5]
        ],
    }


class DomainSummaryService(BaseService):
    """Builds read-only summaries of a user's domain data."""

    def __init__(self, records: DomainRecordSource) -> None:
        super().__init__()
        self.records = records
        self._builders: Dict[SummaryContext, Callable[[str], Any]] = {
            SummaryContext.GENERAL: self._general,
            SummaryContext.PRODUCTIVITY: self._productivity,
            SummaryContext.FINANCE: self._finance,
            SummaryContext.LEARNING: self._learning,
            SummaryContext.GOALS: self._goals,
        }
        missing = set(SummaryContext) - set(self._builders)
        if missing:
            raise RuntimeError(f"No summary builder for: {sorted(c.value for c in missing)}")

    async def _productivity(self, user_id: str) -> Dict[str, Any]:
        tasks, projects = await asyncio.gather(
            asyncio.to_thread(self.records.get_tasks, user_id),
            asyncio.to_thread(self.records.get_projects, user_id),
        )
        return build_productivity_summary(tasks, projects)

    async def _finance(self, user_id: str) -> Dict[str, Any]:
        budgets, income = await asyncio.gather(
            asyncio.to_thread(self.records.get_active_budgets, user_id),
            asyncio.to_thread(self.records.get_recent_income, user_id),
        )
        return build_finance_summary(budgets, income)

    async def _learning(self, user_id: str) -> Dict[str, Any]:
        skills, readings = await asyncio.gather(
            asyncio.to_thread(self.records.get_skills, user_id),
            asyncio.to_thread(self.records.get_readings, user_id),
        )
        return build_learning_summary(skills, readings)

    async def _goals(self, user_id: str) -> Dict[str, Any]:
        goals = await asyncio.to_thread(self.records.get_goals, user_id)
        return build_goals_summary(goals)

    async def _general(self, user_id: str) -> Dict[str, Any]:
        productivity, finance, learning, goals = await asyncio.gather(
            self._productivity(user_id),
            self._finance(user_id),
            self._learning(user_id),
            self._goals(user_id),
        )
        return {
            "productivity": productivity,
            "finance": finance,
            "learning": learning,
            "goals": goals,
        }

    async def get_summary(self, user_id: str, context: SummaryContext) -> Dict[str, Any]:
        """Build the snapshot for a context. Storage errors propagate."""
        return await self._builders[context](user_id)

    async def summarize(
        self,
        user_id: str,
        context: SummaryContext,
    ) -> ServiceResult[Dict[str, Any]]:
        """Advisory variant of get_summary used when building prompts."""
        try:
            return ServiceResult.ok(await self.get_summary(user_id, context))
        except Exception as e:
            self.logger.warning(f"Error getting {context.value} summary for user {user_id}: {e}")
            return ServiceResult.fail(str(e), error_code="SUMMARY_FAILED")
