"""
Pydantic schemas for deployment outcomes.
"""

from typing import List
from pydantic import Field

from certops.schemas.base import CamelModel


class ActionResult(CamelModel):
    """Outcome of one action."""
    index: int
    id: str
    type: str
    name: str = ""
    success: bool
    message: str = ""
    duration_ms: int = 0


class DeployResult(CamelModel):
    """Aggregate outcome of a deployment run."""
    executed: int = 0
    succeeded: int = 0
    results: List[ActionResult] = Field(default_factory=list)

    @property
    def failed(self) -> int:
        return self.executed - self.succeeded

    @property
    def success(self) -> bool:
        return self.executed == self.succeeded
