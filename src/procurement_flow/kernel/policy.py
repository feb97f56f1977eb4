"""
Workflow Policy - tunable decision points of the procurement process

An empty supplier list or a review that names an uninvited supplier has no
single right outcome. Those outcomes are policy, not physics, so they live
here instead of being hard-coded in the state machine.
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field


class WorkflowPolicy(BaseModel):
    """
    Configuration of the procurement request process

    Defaults fail explicitly on the two ambiguous edge cases, enforce
    candidates and flag unassignable tasks rather than rejecting them.
    """

    policy_version: str = Field(
        default="1.0",
        description="Policy version for tracking changes over time",
    )

    quotation_activity: str = Field(
        default="Complete quotation",
        min_length=1,
        description="Human task spawned once per invited supplier",
    )

    review_activity: str = Field(
        default="Review quotations & select supplier",
        min_length=1,
        description="Single decision task assigned to the requester after the join",
    )

    empty_supplier_list: Literal["reject", "skip_to_review"] = Field(
        default="reject",
        description=(
            "reject: InvalidFanOutCardinality; "
            "skip_to_review: no quotations, request goes straight to review"
        ),
    )

    unmatched_selection: Literal["reject", "abort"] = Field(
        default="reject",
        description=(
            "reject: InvalidSupplierSelection, request stays pending for review; "
            "abort: treat an uninvited supplier as no selection"
        ),
    )

    unassignable_task: Literal["flag", "reject"] = Field(
        default="flag",
        description=(
            "flag: create the task with fallback candidates and mark it unassignable; "
            "reject: raise TaskUnassignable before anything is persisted"
        ),
    )

    fallback_candidates: list[str] = Field(
        default_factory=list,
        description="Administrator pool for tasks whose supplier has no account manager",
    )

    enforce_candidates: bool = Field(
        default=True,
        description="Reject task execution by identities outside the candidate set",
    )

    model_config = {
        "frozen": True,
        "json_schema_extra": {
            "description": "Decision points of the procurement request workflow"
        },
    }

    @classmethod
    def from_json_file(cls, path: str | Path) -> "WorkflowPolicy":
        """
        Load a policy from a JSON document

        Missing keys keep their defaults; unknown values fail validation.
        """
        return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))


default_workflow_policy = WorkflowPolicy()
