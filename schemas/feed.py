"""
Pydantic schemas for change-feed records and the artifacts derived from them
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
import json

from core.clock import ensure_utc


class ChangeRecord(BaseModel):
    """
    One entry of the registry change feed.

    The sequence id is the feed position. ``payload`` is the manifest of
    the version described by this change (keywords, library metadata,
    ``dist`` block). Records are immutable once read.
    """

    sequence_id: int = Field(..., ge=0)
    name: str
    version: Optional[str] = None
    published_at: Optional[datetime] = None
    deleted: bool = False
    payload: Dict[str, Any] = Field(default_factory=dict)

    @validator("published_at")
    def normalize_published_at(cls, v):
        """Publish times are always compared as UTC"""
        if v is None:
            return v
        return ensure_utc(v)

    class Config:
        frozen = True


class FeedBatch(BaseModel):
    """Ordered slice of the change feed returned by one read"""

    records: List[ChangeRecord] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.records

    @property
    def highest_sequence(self) -> Optional[int]:
        if not self.records:
            return None
        return max(r.sequence_id for r in self.records)


class CandidateVersion(BaseModel):
    """A change record that passed the relevance filter"""

    sequence_id: int
    name: str = Field(..., min_length=1, max_length=214)
    version: str = Field(..., min_length=1)
    published_at: datetime
    tarball_url: str
    integrity: Optional[str] = None
    shasum: Optional[str] = None

    @property
    def basename(self) -> str:
        """Unscoped package name (``@scope/pkg`` -> ``pkg``)"""
        return self.name.rsplit("/", 1)[-1]

    class Config:
        frozen = True


class StagedArtifact(BaseModel):
    """A package tarball written to the staging bucket"""

    candidate: CandidateVersion
    bucket: str
    key: str
    size: int = Field(..., ge=0)
    duration: float = Field(..., ge=0, description="Staging time in seconds")
    integrity: str = Field(..., description="SRI digest of the staged bytes")

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.key}"


class Notification(BaseModel):
    """
    Queue message announcing a staged package version.

    Serialized with camelCase keys for the downstream ingestion consumer.
    Consumers must tolerate duplicates (delivery is at-least-once).
    """

    package_name: str = Field(..., alias="packageName")
    package_version: str = Field(..., alias="packageVersion")
    tarball_uri: str = Field(..., alias="tarballUri")
    integrity: str
    time: datetime
    sequence_id: int = Field(..., alias="sequence")

    class Config:
        populate_by_name = True

    @classmethod
    def from_artifact(cls, artifact: StagedArtifact) -> "Notification":
        candidate = artifact.candidate
        return cls(
            package_name=candidate.name,
            package_version=candidate.version,
            tarball_uri=artifact.uri,
            integrity=artifact.integrity,
            time=candidate.published_at,
            sequence_id=candidate.sequence_id,
        )

    def to_message(self) -> str:
        """JSON message body"""
        return json.dumps(self.model_dump(mode="json", by_alias=True), sort_keys=True)
