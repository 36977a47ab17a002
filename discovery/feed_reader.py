"""
Change-feed reader for a CouchDB-style registry replica.

Reads ``<feed>/_changes?since=<position>&limit=<n>&include_docs=true`` and
turns each change into a ChangeRecord describing the newest version of the
changed package document. Transient failures are retried inside
ResilientHttpClient; what survives the retries is mapped onto the feed
error taxonomy:

    TransientFeedError  retries exhausted (timeouts, 429, 5xx)
    FatalFeedError      unusable response (bad JSON, missing results, 4xx)
"""

from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime
import logging

from core.clock import ensure_utc
from core.exceptions import (
    FatalFeedError,
    HttpError,
    ResourceNotFoundError,
    RetryableError,
    TransientFeedError,
)
from discovery.http import ResilientHttpClient, encode_package_name
from schemas.feed import ChangeRecord, FeedBatch

logger = logging.getLogger(__name__)

# Keys of a package document's "time" map that are not versions
_RESERVED_TIME_KEYS = {"created", "modified", "unpublished"}


class RegistryFeedReader:
    """
    Pulls ordered batches of change records starting after a position.

    Attributes:
        feed_url: Base URL of the replica (e.g. https://replicate.npmjs.com)
        http: Resilient HTTP client used for every request
    """

    def __init__(self, feed_url: str, http: ResilientHttpClient):
        self.feed_url = feed_url.rstrip("/")
        self.http = http

    async def read(self, position: Optional[int], max_batch: int) -> FeedBatch:
        """
        Return the next contiguous slice of changes with sequence > position.

        Args:
            position: Last processed sequence, None to start at the earliest
                retained change
            max_batch: Maximum number of changes to return

        Returns:
            FeedBatch, empty when nothing new is available

        Raises:
            TransientFeedError: Feed unavailable after all retries
            FatalFeedError: Feed response cannot be processed
        """
        since = position if position is not None else 0
        url = f"{self.feed_url}/_changes"
        params = {"since": since, "limit": max_batch, "include_docs": "true"}

        body = await self._get_json(url, params, position=since)

        if not isinstance(body, dict) or not isinstance(body.get("results"), list):
            raise FatalFeedError(
                "Change feed response has no results list",
                context={"feed_url": url, "position": since, "response_type": type(body).__name__}
            )

        records: List[ChangeRecord] = []
        for change in body["results"]:
            sequence_id = self._parse_seq(change, url, since)
            if sequence_id <= since:
                # Replicas may repeat the boundary change
                continue
            records.append(await self._to_record(sequence_id, change))

        records.sort(key=lambda r: r.sequence_id)

        batch = FeedBatch(records=records[:max_batch])
        logger.info(
            f"Read {len(batch.records)} changes from {self.feed_url} after position {since}"
        )
        return batch

    async def _get_json(self, url: str, params: Dict[str, Any], position: int) -> Any:
        try:
            return await self.http.get_json(url, params=params)
        except RetryableError as e:
            raise TransientFeedError(
                "Change feed unavailable after retries",
                context={"feed_url": url, "position": position, **e.context},
                original_exception=e
            )
        except HttpError as e:
            raise FatalFeedError(
                "Change feed request failed",
                context={"feed_url": url, "position": position, **e.context},
                original_exception=e
            )

    def _parse_seq(self, change: Any, url: str, position: int) -> int:
        if not isinstance(change, dict) or "seq" not in change:
            raise FatalFeedError(
                "Change without a sequence",
                context={"feed_url": url, "position": position, "change": str(change)[:200]}
            )
        try:
            return self._coerce_seq(change["seq"])
        except (TypeError, ValueError) as e:
            raise FatalFeedError(
                "Change sequence is not numeric",
                context={"feed_url": url, "position": position, "seq": str(change["seq"])[:100]},
                original_exception=e
            )

    @staticmethod
    def _coerce_seq(value: Any) -> int:
        """Sequences are integers, or CouchDB "<n>-<opaque>" strings"""
        if isinstance(value, bool):
            raise TypeError("boolean sequence")
        if isinstance(value, int):
            return value
        return int(str(value).split("-", 1)[0])

    async def _to_record(self, sequence_id: int, change: Dict[str, Any]) -> ChangeRecord:
        name = str(change.get("id") or "")

        if change.get("deleted") or name.startswith("_design/"):
            return ChangeRecord(sequence_id=sequence_id, name=name, deleted=True)

        doc = change.get("doc")
        if doc is None:
            doc = await self._fetch_document(name)
            if doc is None:
                return ChangeRecord(sequence_id=sequence_id, name=name, deleted=True)

        version, published_at = self._latest_version(doc)
        if version is None:
            # Surfaces as malformed in the relevance filter
            return ChangeRecord(sequence_id=sequence_id, name=name)

        manifest = (doc.get("versions") or {}).get(version)
        return ChangeRecord(
            sequence_id=sequence_id,
            name=name,
            version=version,
            published_at=published_at,
            payload=manifest if isinstance(manifest, dict) else {},
        )

    async def _fetch_document(self, name: str) -> Optional[Dict[str, Any]]:
        """Package document for changes delivered without an inline doc"""
        url = f"{self.feed_url}/{encode_package_name(name)}"
        try:
            doc = await self.http.get_json(url)
        except ResourceNotFoundError:
            logger.info(f"Package {name} no longer exists in the replica")
            return None
        except RetryableError as e:
            raise TransientFeedError(
                "Package document unavailable after retries",
                context={"url": url, "package_name": name, **e.context},
                original_exception=e
            )
        except HttpError as e:
            raise FatalFeedError(
                "Package document request failed",
                context={"url": url, "package_name": name, **e.context},
                original_exception=e
            )
        return doc if isinstance(doc, dict) else {}

    @staticmethod
    def _latest_version(doc: Any) -> Tuple[Optional[str], Optional[datetime]]:
        """Newest version by publish time that also has a manifest"""
        if not isinstance(doc, dict):
            return None, None
        times = doc.get("time")
        versions = doc.get("versions")
        if not isinstance(times, dict) or not isinstance(versions, dict):
            return None, None

        latest: Tuple[Optional[str], Optional[datetime]] = (None, None)
        for version, raw in times.items():
            if version in _RESERVED_TIME_KEYS or version not in versions:
                continue
            try:
                published = ensure_utc(datetime.fromisoformat(str(raw).replace("Z", "+00:00")))
            except ValueError:
                continue
            if latest[1] is None or published > latest[1]:
                latest = (version, published)
        return latest
