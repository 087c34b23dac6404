"""Role profile models for planner and worker prompts."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from ..executor import Permissions

ROLES = ("lead", "director", "cluster_lead", "worker")


class RoleProfile(BaseModel):
    """How Flotilla primes the executor for one session role."""

    id: str = Field(..., description="Unique identifier for the profile.")
    role: str = Field(..., description="Session role the profile applies to.")
    title: str = Field(default="", description="Display title for the profile.")
    system_prompt: str = Field(
        ...,
        description="Instructions placed at the top of every prompt sent for this role.",
    )
    permissions: Permissions | None = Field(
        default=None,
        description="Sandbox permissions; planners default to read-only, workers to workspace-write.",
    )
    model: str | None = Field(default=None, description="Model hint passed to the executor.")
    constraints: list[str] = Field(
        default_factory=list,
        description="Constraints or guardrails appended to the prompt.",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Arbitrary metadata for reporting.",
    )

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Role profile id must not be empty")
        return normalized

    @field_validator("role")
    @classmethod
    def _validate_role(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in ROLES:
            raise ValueError(f"Role must be one of {', '.join(ROLES)}")
        return normalized

    @field_validator("constraints", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return list(value)
        raise TypeError("Constraints must be a sequence of strings")

    @property
    def effective_permissions(self) -> Permissions:
        if self.permissions is not None:
            return self.permissions
        return Permissions.WORKSPACE_WRITE if self.role == "worker" else Permissions.READ_ONLY


DEFAULT_PROFILES: dict[str, RoleProfile] = {
    "lead": RoleProfile(
        id="default-lead",
        role="lead",
        title="Lead planner",
        system_prompt=(
            "You are the lead engineer coordinating parallel workers on one repository. "
            "Inspect the code and the project direction, then split the outstanding work "
            "into independent areas that touch disjoint files. Do not modify any files."
        ),
    ),
    "director": RoleProfile(
        id="default-director",
        role="director",
        title="Director",
        system_prompt=(
            "You direct several teams working on one repository. Split the outstanding "
            "work into one broad, independent goal per team. Do not modify any files."
        ),
    ),
    "cluster_lead": RoleProfile(
        id="default-cluster-lead",
        role="cluster_lead",
        title="Team lead",
        system_prompt=(
            "You lead one team working on a feature branch. Split your team's goal into "
            "independent areas for your workers. Do not modify any files."
        ),
    ),
    "worker": RoleProfile(
        id="default-worker",
        role="worker",
        title="Worker",
        system_prompt=(
            "You are an engineer working in your own checkout of the repository. Complete "
            "the assignment below, keep changes within the listed files where possible, and "
            "make sure the acceptance criteria hold before you finish."
        ),
    ),
}


__all__ = ["DEFAULT_PROFILES", "ROLES", "RoleProfile"]
