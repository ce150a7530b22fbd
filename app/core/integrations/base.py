"""Integration protocol and result types shared by every warehouse adapter."""

import re
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from app.core.errors import BuildError

Rows = List[Dict[str, Any]]

TEMPLATE_VARIABLE_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


@dataclass
class SubmitResult:
    """Outcome of a submission: rows for synchronous warehouses, else a handle."""

    rows: Optional[Rows] = None
    handle: Optional[str] = None

    @property
    def is_pollable(self) -> bool:
        return self.handle is not None


class PollState(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class PollResult:
    state: PollState
    rows: Optional[Rows] = None
    error: Optional[str] = None

    @classmethod
    def pending(cls) -> "PollResult":
        return cls(PollState.PENDING)

    @classmethod
    def succeeded(cls, rows: Rows) -> "PollResult":
        return cls(PollState.SUCCEEDED, rows=rows)

    @classmethod
    def failed(cls, error: str) -> "PollResult":
        return cls(PollState.FAILED, error=error)


class Integration(Protocol):
    """Protocol for warehouse integrations."""

    async def submit_query(
        self, sql: str, template_vars: Dict[str, Any]
    ) -> SubmitResult:
        """Submit SQL; raise SubmissionError/ExecutionError on failure."""
        ...

    async def poll_query(self, handle: str) -> PollResult:
        """Check a pollable job."""
        ...

    async def cancel_query(self, handle: str) -> None:
        """Best-effort cancel of a running external job."""
        ...


def format_template_value(value: Any) -> str:
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def compile_sql_template(sql: str, template_vars: Dict[str, Any]) -> str:
    """
    Replace ``{{ name }}`` placeholders with template variable values.

    Raises:
        BuildError: if the SQL references a variable that was not provided.
    """
    missing = [
        name
        for name in TEMPLATE_VARIABLE_PATTERN.findall(sql)
        if name not in template_vars
    ]
    if missing:
        raise BuildError(
            f"Missing template variables: {', '.join(sorted(set(missing)))}"
        )

    return TEMPLATE_VARIABLE_PATTERN.sub(
        lambda match: format_template_value(template_vars[match.group(1)]), sql
    )
