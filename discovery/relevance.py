"""
Relevance filter: decides whether a change record warrants staging.

Pure and side-effect free: classification only looks at the record and
the rule configuration, and never raises. Records that fail required-field
validation are reported as MALFORMED so the scanner can count and skip them.
"""

from dataclasses import dataclass
from typing import Any, Iterable, Optional
import enum

from core.exceptions import MalformedRecord
from schemas.feed import CandidateVersion, ChangeRecord

DEFAULT_KEYWORDS = frozenset({"cdk", "aws-cdk", "awscdk", "cdk8s", "cdktf"})
DEFAULT_METADATA_FIELD = "jsii"


class Outcome(str, enum.Enum):
    IRRELEVANT = "irrelevant"
    MALFORMED = "malformed"
    CANDIDATE = "candidate"


@dataclass(frozen=True)
class Classification:
    outcome: Outcome
    reason: str
    candidate: Optional[CandidateVersion] = None

    @property
    def is_candidate(self) -> bool:
        return self.outcome == Outcome.CANDIDATE


class RelevanceFilter:
    """
    Rule set for package versions worth staging.

    A version is relevant when it declares the library-type metadata field
    (``jsii`` by default) and one of the recognized keywords. The canary
    probe package is always relevant so it can round-trip to the catalog.
    """

    def __init__(
        self,
        keywords: Iterable[str] = DEFAULT_KEYWORDS,
        metadata_field: str = DEFAULT_METADATA_FIELD,
        deny_list: Iterable[str] = (),
        probe_package: Optional[str] = None
    ):
        self.keywords = frozenset(k.lower() for k in keywords)
        self.metadata_field = metadata_field
        self.deny_list = frozenset(deny_list)
        self.probe_package = probe_package

    def classify(self, record: ChangeRecord) -> Classification:
        try:
            return self._classify(record)
        except MalformedRecord as e:
            return Classification(Outcome.MALFORMED, e.message)
        except Exception as e:
            return Classification(Outcome.MALFORMED, f"{type(e).__name__}: {e}")

    def _classify(self, record: ChangeRecord) -> Classification:
        if record.deleted:
            return Classification(Outcome.IRRELEVANT, "deleted")

        payload = record.payload
        self._require(bool(record.name), record, "name", "missing package name")
        self._require(bool(record.version), record, "version", "missing version")
        self._require(record.published_at is not None, record, "time", "missing publish time")
        self._require(isinstance(payload, dict) and bool(payload), record, "payload", "missing version manifest")

        dist = payload.get("dist")
        self._require(isinstance(dist, dict), record, "dist", "missing dist block")
        tarball = dist.get("tarball")
        self._require(isinstance(tarball, str) and bool(tarball), record, "dist.tarball", "missing tarball URL")

        keywords = self._keywords(record, payload.get("keywords"))

        if record.name in self.deny_list:
            return Classification(Outcome.IRRELEVANT, "deny-listed")

        is_probe = self.probe_package is not None and record.name == self.probe_package
        if not is_probe:
            if not isinstance(payload.get(self.metadata_field), dict):
                return Classification(Outcome.IRRELEVANT, f"no {self.metadata_field} metadata")
            if not self.keywords.intersection(keywords):
                return Classification(Outcome.IRRELEVANT, "no recognized keyword")

        candidate = CandidateVersion(
            sequence_id=record.sequence_id,
            name=record.name,
            version=record.version,
            published_at=record.published_at,
            tarball_url=tarball,
            integrity=self._optional_str(dist.get("integrity")),
            shasum=self._optional_str(dist.get("shasum")),
        )
        return Classification(Outcome.CANDIDATE, "probe" if is_probe else "relevant", candidate)

    @staticmethod
    def _require(condition: bool, record: ChangeRecord, field_name: str, message: str) -> None:
        if not condition:
            raise MalformedRecord(
                message,
                context={"sequence_id": record.sequence_id, "field_name": field_name}
            )

    def _keywords(self, record: ChangeRecord, raw: Any) -> frozenset:
        if raw is None:
            return frozenset()
        if isinstance(raw, str):
            # Some manifests carry a comma or space separated string
            return frozenset(k.strip().lower() for k in raw.replace(",", " ").split() if k.strip())
        self._require(isinstance(raw, list), record, "keywords", "keywords is neither a list nor a string")
        return frozenset(k.strip().lower() for k in raw if isinstance(k, str))

    @staticmethod
    def _optional_str(value: Any) -> Optional[str]:
        return value if isinstance(value, str) and value else None


def classify(record: ChangeRecord, rules: Optional[RelevanceFilter] = None) -> Classification:
    """Classify with the default rule set"""
    return (rules or RelevanceFilter()).classify(record)