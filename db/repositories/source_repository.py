"""
Repository for upstream source registration.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db.models.source import Source

logger = logging.getLogger(__name__)


class SourceRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get_by_name(self, name: str) -> Source | None:
        stmt = select(Source).where(Source.name == name)
        return self._session.scalars(stmt).first()

    def get_or_create(self, name: str) -> Source:
        """
        Return the source row for ``name``, inserting it on first use.

        Two writers racing on the same name both end up with the single row;
        the loser's insert is rolled back to a savepoint and re-read.
        """

        existing = self.get_by_name(name)
        if existing is not None:
            return existing

        source = Source(name=name)
        try:
            with self._session.begin_nested():
                self._session.add(source)
                self._session.flush()
        except IntegrityError:
            logger.info("Source registered concurrently name=%s", name)
            existing = self.get_by_name(name)
            if existing is None:
                raise
            return existing
        return source
