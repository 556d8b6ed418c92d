from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import logging
from typing import Iterator

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from wpsandbox.models import EnvironmentLeaseORM, LeaseRead
from wpsandbox.services.errors import EnvironmentBusyException, NotFoundException

logger = logging.getLogger(__name__)


class LeaseManager:
    """Exclusive, database-backed leases keyed by environment id."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def acquire(self, environment_id: str, *, holder: str) -> LeaseRead:
        with Session(self._engine) as session:
            lease = EnvironmentLeaseORM(environment_id=environment_id, holder=holder)
            try:
                session.add(lease)
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                logger.warning("Environment %s is already leased; rejecting %s", environment_id, holder)
                raise EnvironmentBusyException(f"Environment {environment_id} is in use by another run") from exc
            session.refresh(lease)
            logger.debug("Acquired lease id=%s environment_id=%s holder=%s", lease.id, environment_id, holder)
            return LeaseRead.model_validate(lease)

    def release(self, lease_id: int) -> LeaseRead:
        with Session(self._engine) as session:
            lease = session.get(EnvironmentLeaseORM, lease_id)
            if lease is None:
                raise NotFoundException("Lease not found")
            if lease.released_at is None:
                lease.released_at = datetime.now(timezone.utc)
                session.add(lease)
                session.commit()
                session.refresh(lease)
                logger.debug("Released lease id=%s environment_id=%s", lease.id, lease.environment_id)
            return LeaseRead.model_validate(lease)

    def active_lease(self, environment_id: str) -> LeaseRead | None:
        with Session(self._engine) as session:
            lease = session.exec(
                select(EnvironmentLeaseORM).where(
                    EnvironmentLeaseORM.environment_id == environment_id,
                    EnvironmentLeaseORM.released_at.is_(None),
                )
            ).first()
            return LeaseRead.model_validate(lease) if lease is not None else None

    @contextmanager
    def held(self, environment_id: str, *, holder: str) -> Iterator[LeaseRead]:
        lease = self.acquire(environment_id, holder=holder)
        try:
            yield lease
        finally:
            self.release(lease.id)
