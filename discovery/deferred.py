"""
Parking area for candidates whose staging failed.

The marker moves past a change even when its staging fails; the candidate
is recorded here first and retried by later runs.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import select, and_
from models.deferred_version import DeferredVersion
from schemas.feed import CandidateVersion
from core.exceptions import CheckpointError
import logging

logger = logging.getLogger(__name__)


@dataclass
class DeferredCandidate:
    candidate: CandidateVersion
    attempts: int
    last_error: str = ""


class DeferredVersionStore(ABC):

    @abstractmethod
    async def defer(self, candidate: CandidateVersion, error: str) -> None:
        """Record a failed attempt (new entry or attempts += 1)"""
        pass

    @abstractmethod
    async def pending(self, limit: int) -> List[DeferredCandidate]:
        """Oldest deferred candidates first"""
        pass

    @abstractmethod
    async def resolve(self, candidate: CandidateVersion) -> None:
        """Forget a candidate (staged successfully or abandoned)"""
        pass


class DatabaseDeferredVersionStore(DeferredVersionStore):
    """Deferred candidates kept in the ``deferred_versions`` table"""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def _get_row(self, candidate: CandidateVersion):
        result = await self.db.execute(
            select(DeferredVersion).where(
                and_(
                    DeferredVersion.package_name == candidate.name,
                    DeferredVersion.package_version == candidate.version
                )
            )
        )
        return result.scalar_one_or_none()

    async def defer(self, candidate: CandidateVersion, error: str) -> None:
        try:
            row = await self._get_row(candidate)
            if row is None:
                self.db.add(DeferredVersion(
                    package_name=candidate.name,
                    package_version=candidate.version,
                    sequence_id=candidate.sequence_id,
                    candidate=candidate.model_dump(mode="json"),
                    attempts=1,
                    last_error=error[:2000],
                ))
            else:
                row.attempts += 1
                row.last_error = error[:2000]
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise CheckpointError(
                "Failed to record deferred version",
                context={
                    "package_name": candidate.name,
                    "package_version": candidate.version,
                    "operation": "defer"
                },
                original_exception=e
            )

    async def pending(self, limit: int) -> List[DeferredCandidate]:
        try:
            result = await self.db.execute(
                select(DeferredVersion).order_by(DeferredVersion.sequence_id).limit(limit)
            )
            rows = result.scalars().all()
        except SQLAlchemyError as e:
            raise CheckpointError(
                "Failed to load deferred versions",
                context={"operation": "pending"},
                original_exception=e
            )

        return [
            DeferredCandidate(
                candidate=CandidateVersion.model_validate(row.candidate),
                attempts=row.attempts,
                last_error=row.last_error or "",
            )
            for row in rows
        ]

    async def resolve(self, candidate: CandidateVersion) -> None:
        try:
            row = await self._get_row(candidate)
            if row is not None:
                await self.db.delete(row)
                await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise CheckpointError(
                "Failed to resolve deferred version",
                context={
                    "package_name": candidate.name,
                    "package_version": candidate.version,
                    "operation": "resolve"
                },
                original_exception=e
            )
