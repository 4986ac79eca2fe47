"""Pydantic models for the JSON:API documents returned by the Terraform API."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .utils import NOT_AVAILABLE


class Pagination(BaseModel):
    """Pagination block found under ``meta.pagination``."""

    current_page: int = Field(default=1, alias="current-page")
    next_page: Optional[int] = Field(default=None, alias="next-page")
    total_pages: Optional[int] = Field(default=None, alias="total-pages")
    total_count: Optional[int] = Field(default=None, alias="total-count")

    model_config = ConfigDict(populate_by_name=True)

    @property
    def exhausted(self) -> bool:
        """Whether there is no further page to request."""
        return not self.next_page

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "Pagination":
        """Read pagination from a JSON:API document."""
        meta = document.get("meta") or {}
        return cls.model_validate(meta.get("pagination") or {})


class Run(BaseModel):
    """A Terraform run, as referenced by a workspace's current-run."""

    id: str
    status: str = NOT_AVAILABLE
    created_at: Optional[str] = None


class Workspace(BaseModel):
    """A workspace with the attributes surfaced as metric labels."""

    id: str
    name: str
    organization: str
    terraform_version: str = ""
    created_at: Optional[str] = None
    environment: str = ""
    current_run: Optional[Run] = None

    @classmethod
    def from_resource(
        cls, resource: Dict[str, Any], runs: Dict[str, Run]
    ) -> "Workspace":
        """Build a workspace from a JSON:API resource object.

        Args:
            resource: Element of the document's ``data`` list.
            runs: Runs from the ``included`` list, keyed by id.
        """
        attrs = resource.get("attributes") or {}
        rels = resource.get("relationships") or {}
        org_ref = (rels.get("organization") or {}).get("data") or {}
        run_ref = (rels.get("current-run") or {}).get("data")
        current_run = None
        if run_ref:
            # A run that was not included still carries its id.
            current_run = runs.get(run_ref["id"]) or Run(id=run_ref["id"])
        return cls(
            id=resource["id"],
            name=attrs.get("name", ""),
            organization=org_ref.get("id", ""),
            terraform_version=attrs.get("terraform-version") or "",
            created_at=attrs.get("created-at"),
            environment=attrs.get("environment") or "",
            current_run=current_run,
        )


class WorkspaceList(BaseModel):
    """One page of workspaces."""

    items: List[Workspace] = Field(default_factory=list)
    pagination: Pagination = Field(default_factory=Pagination)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "WorkspaceList":
        """Parse a workspace listing document."""
        runs: Dict[str, Run] = {}
        for inc in document.get("included") or []:
            if inc.get("type") != "runs":
                continue
            attrs = inc.get("attributes") or {}
            runs[inc["id"]] = Run(
                id=inc["id"],
                status=attrs.get("status") or NOT_AVAILABLE,
                created_at=attrs.get("created-at"),
            )
        items = [
            Workspace.from_resource(resource, runs)
            for resource in document.get("data") or []
        ]
        return cls(items=items, pagination=Pagination.from_document(document))


class OrganizationList(BaseModel):
    """One page of organization names."""

    names: List[str] = Field(default_factory=list)
    pagination: Pagination = Field(default_factory=Pagination)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "OrganizationList":
        """Parse an organization listing document."""
        names = []
        for resource in document.get("data") or []:
            attrs = resource.get("attributes") or {}
            names.append(attrs.get("name") or resource["id"])
        return cls(names=names, pagination=Pagination.from_document(document))
