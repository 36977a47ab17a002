"""
Stages package tarballs into the staging bucket.

For each candidate the stager downloads the tarball from its origin,
verifies it against the registry's published digest and writes it under a
deterministic key, so staging the same version twice overwrites the same
object. Staging time is recorded whether or not staging succeeds.
"""

from typing import Optional
import base64
import hashlib
import logging
import time

from core.clock import MonotonicClock
from core.exceptions import HttpError, StagingError
from core.metrics import MetricsRecorder, MetricUnit
from discovery.constants import MetricName, staged_key
from discovery.http import ResilientHttpClient
from discovery.storage import ObjectStore
from schemas.feed import CandidateVersion, StagedArtifact

logger = logging.getLogger(__name__)

_SUPPORTED_SRI = ("sha512", "sha384", "sha256", "sha1")


def sri_digest(data: bytes, algorithm: str = "sha384") -> str:
    """Subresource-integrity string for ``data``"""
    digest = hashlib.new(algorithm, data).digest()
    return f"{algorithm}-{base64.b64encode(digest).decode('ascii')}"


def verify_integrity(data: bytes, integrity: Optional[str], shasum: Optional[str]) -> Optional[str]:
    """
    Check downloaded bytes against the registry's digests.

    ``integrity`` may hold several space separated SRI entries; the first
    one using a supported algorithm is checked. ``shasum`` (sha1 hex) is
    only used when no SRI entry is usable.

    Returns:
        None when the bytes match (or no digest is published), otherwise a
        description of the mismatch
    """
    if integrity:
        for entry in integrity.split():
            algorithm, _, expected = entry.partition("-")
            if algorithm not in _SUPPORTED_SRI or not expected:
                continue
            actual = sri_digest(data, algorithm)
            if actual != entry:
                return f"{algorithm} mismatch: expected {entry}, got {actual}"
            return None

    if shasum:
        actual = hashlib.sha1(data).hexdigest()
        if actual != shasum.lower():
            return f"shasum mismatch: expected {shasum}, got {actual}"

    return None


class ArtifactStager:
    """
    Copies candidate tarballs into object storage.

    Attributes:
        store: Destination object store
        http: Resilient HTTP client for tarball downloads
        key_prefix: Prefix of staged keys (covered by the bucket's expiration rule)
    """

    def __init__(
        self,
        store: ObjectStore,
        http: ResilientHttpClient,
        metrics: MetricsRecorder,
        key_prefix: str = "staged/",
        clock: MonotonicClock = time.monotonic
    ):
        self.store = store
        self.http = http
        self.metrics = metrics
        self.key_prefix = key_prefix
        self.clock = clock

    def key_for(self, candidate: CandidateVersion) -> str:
        return staged_key(self.key_prefix, candidate.name, candidate.basename, candidate.version)

    async def stage(self, candidate: CandidateVersion) -> StagedArtifact:
        """
        Download, verify and store one tarball.

        Raises:
            StagingError: fetch failure, digest mismatch or write failure
        """
        started = self.clock()
        try:
            return await self._stage(candidate, started)
        finally:
            elapsed = self.clock() - started
            self.metrics.put(MetricName.STAGING_TIME, elapsed * 1000, MetricUnit.MILLISECONDS)

    async def _stage(self, candidate: CandidateVersion, started: float) -> StagedArtifact:
        key = self.key_for(candidate)
        context = {
            "package_name": candidate.name,
            "package_version": candidate.version,
            "tarball_url": candidate.tarball_url,
            "sequence_id": candidate.sequence_id,
        }

        try:
            response = await self.http.get(candidate.tarball_url)
            data = response.content
        except HttpError as e:
            raise StagingError("Failed to download tarball", context=context, original_exception=e)

        mismatch = verify_integrity(data, candidate.integrity, candidate.shasum)
        if mismatch:
            raise StagingError(f"Tarball integrity check failed ({mismatch})", context=context)

        try:
            await self.store.put_object(
                key,
                data,
                content_type="application/octet-stream",
                metadata={
                    "origin-uri": candidate.tarball_url,
                    "published-at": candidate.published_at.isoformat(),
                    "sequence": str(candidate.sequence_id),
                },
            )
        except Exception as e:
            raise StagingError(
                "Failed to write staged tarball",
                context={**context, "staged_key": key},
                original_exception=e
            )

        artifact = StagedArtifact(
            candidate=candidate,
            bucket=self.store.bucket,
            key=key,
            size=len(data),
            duration=max(0.0, self.clock() - started),
            integrity=sri_digest(data),
        )
        logger.info(f"Staged {candidate.name}@{candidate.version} to {artifact.uri} ({artifact.size} bytes)")
        return artifact
