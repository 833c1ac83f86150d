"""Generic keyed access to mirror tables.

Every mirror table has one provider-side unique key (``bridge_wallet_id``,
``bridge_transfer_id``, ...). ``MirrorRepository.upsert`` is last-write-wins on
that key and reports what actually changed so callers can decide whether a
transition deserves a notification.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Generic, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from kalypso_api.db.models import Base
from kalypso_api.errors import PersistenceError
from kalypso_api.utils.time import ensure_utc, utc_now

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=Base)

MAX_PAGE_SIZE = 100


@dataclass
class UpsertResult(Generic[ModelT]):
    """Outcome of ``MirrorRepository.upsert``.

    ``previous`` maps each changed column to its value before the write.
    """

    row: ModelT
    created: bool
    previous: dict[str, Any] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return self.created or bool(self.previous)

    def changed_field(self, name: str) -> bool:
        return self.created or name in self.previous

    def value_before(self, name: str) -> Any:
        """Column value as it was before this write (None for a new row)."""
        if self.created:
            return None
        if name in self.previous:
            return self.previous[name]
        return getattr(self.row, name)


def _same(a: Any, b: Any) -> bool:
    if isinstance(a, datetime) and isinstance(b, datetime):
        return ensure_utc(a) == ensure_utc(b)
    if isinstance(a, Decimal) or isinstance(b, Decimal):
        if a is None or b is None:
            return a is b
        return Decimal(str(a)) == Decimal(str(b))
    return a == b


class MirrorRepository(Generic[ModelT]):
    """Keyed lookup, keyed upsert and owner-scoped listing for one table."""

    def __init__(self, db: Session, model: type[ModelT], key_column: str):
        self.db = db
        self.model = model
        self.key_column = key_column

    def get(self, row_id: str) -> Optional[ModelT]:
        return self.db.get(self.model, row_id)

    def get_by_key(self, key: str) -> Optional[ModelT]:
        stmt = select(self.model).where(getattr(self.model, self.key_column) == key)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_owned(self, row_id: str, user_id: str) -> Optional[ModelT]:
        """Lookup by local ID restricted to the owning user."""
        stmt = select(self.model).where(
            self.model.id == row_id,  # type: ignore[attr-defined]
            self.model.user_id == user_id,  # type: ignore[attr-defined]
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_owned_by_key(self, key: str, user_id: str) -> Optional[ModelT]:
        stmt = select(self.model).where(
            getattr(self.model, self.key_column) == key,
            self.model.user_id == user_id,  # type: ignore[attr-defined]
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_for_user(
        self,
        user_id: str,
        *,
        filters: Optional[dict[str, Any]] = None,
        order_by: str = "created_at",
        descending: bool = True,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ModelT]:
        """Owner-scoped list with equality filters (None values ignored)."""
        stmt = select(self.model).where(self.model.user_id == user_id)  # type: ignore[attr-defined]
        for column, value in (filters or {}).items():
            if value is not None:
                stmt = stmt.where(getattr(self.model, column) == value)
        order_col = getattr(self.model, order_by)
        stmt = stmt.order_by(order_col.desc() if descending else order_col.asc())
        stmt = stmt.limit(max(1, min(limit, MAX_PAGE_SIZE))).offset(max(0, offset))
        return list(self.db.execute(stmt).scalars())

    def apply(self, row: ModelT, values: dict[str, Any]) -> dict[str, Any]:
        """Set ``values`` on ``row``; return the previous value of each changed column."""
        previous: dict[str, Any] = {}
        for column, value in values.items():
            current = getattr(row, column)
            if not _same(current, value):
                previous[column] = current
                setattr(row, column, value)
        if hasattr(row, "updated_at"):
            row.updated_at = utc_now()  # type: ignore[attr-defined]
        return previous

    def upsert(self, key: str, values: dict[str, Any]) -> UpsertResult[ModelT]:
        """Insert or update the row identified by ``key`` (flushes, does not commit).

        Raises:
            PersistenceError: If the row can be neither inserted nor found
        """
        row = self.get_by_key(key)
        if row is not None:
            return UpsertResult(row=row, created=False, previous=self.apply(row, values))

        row = self.model(**{self.key_column: key, **values})
        try:
            # Savepoint: losing the race undoes only this insert
            with self.db.begin_nested():
                self.db.add(row)
                self.db.flush()
        except IntegrityError:
            # Lost an insert race on the unique key: re-apply onto the winner's row
            logger.info(
                "MIRROR_UPSERT_RACE",
                extra={"table": self.model.__tablename__, "key": key},
            )
            row = self.get_by_key(key)
            if row is None:
                raise PersistenceError(
                    f"Upsert into {self.model.__tablename__} failed for key {key}"
                )
            return UpsertResult(row=row, created=False, previous=self.apply(row, values))

        return UpsertResult(row=row, created=True)
