"""
Pydantic schemas for claims and batch outcomes.
"""
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class UserClaims(BaseModel):
    """Global permissions plus per-organization permissions keyed by kind then organization UUID."""
    model_config = ConfigDict(populate_by_name=True)

    global_: List[str] = Field(default_factory=list, alias="global")
    organizations: Dict[str, Dict[str, List[str]]] = Field(default_factory=dict)


class UserRoleInfo(BaseModel):
    uuid: str
    organization_kind: Optional[str] = None
    organization_uuid: Optional[str] = None


class BatchItemResult(BaseModel):
    """Outcome of one item in a best-effort batch."""
    id: str
    ok: bool
    error: Optional[str] = None


class BatchSummary(BaseModel):
    succeeded: int
    failed: int
    results: List[BatchItemResult]

    @classmethod
    def from_results(cls, results: List[BatchItemResult]) -> "BatchSummary":
        succeeded = sum(1 for item in results if item.ok)
        return cls(succeeded=succeeded, failed=len(results) - succeeded, results=results)


class ClaimsResponse(BaseModel):
    user_id: str
    claims: UserClaims
