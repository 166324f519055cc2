from __future__ import annotations

from collections.abc import Iterable

import structlog
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from hrbac.domain.errors import ConflictError, NotFoundError
from hrbac.domain.models import Org, ScopeLabel, ScopeLabelBatchItem, ScopeLabelRead, now_utc
from hrbac.infra.db import open_session

logger = structlog.get_logger(__name__)

SCOPE_LEVEL_COUNT = 7
DEFAULT_SCOPE_LABELS = {level: f"Level {level}" for level in range(1, SCOPE_LEVEL_COUNT + 1)}


def _label_read(label: ScopeLabel) -> ScopeLabelRead:
    return ScopeLabelRead(id=label.id, org_id=label.org_id, level=label.level, label=label.label)


class ScopeLabelService:
    """Per-org display names for scope tree levels.

    Level 1 names root scopes, level 2 their children, and so on. Levels
    without a stored label fall back to ``DEFAULT_SCOPE_LABELS``.
    """

    def _session(self) -> Session:
        return open_session()

    def _check_level(self, level: int) -> None:
        if not 1 <= level <= SCOPE_LEVEL_COUNT:
            raise NotFoundError("scope level", f"scope level {level} not found")

    def _require_org(self, session: Session, org_id: str) -> None:
        if session.get(Org, org_id) is None:
            raise NotFoundError("org")

    def _stored(self, session: Session, org_id: str) -> dict[int, ScopeLabel]:
        statement = select(ScopeLabel).where(ScopeLabel.org_id == org_id).order_by(col(ScopeLabel.level))
        return {label.level: label for label in session.exec(statement).all()}

    def _write(self, session: Session, org_id: str, level: int, label: str) -> ScopeLabel:
        self._check_level(level)
        cleaned = label.strip()
        if not cleaned:
            raise ConflictError("scope label is required")
        statement = select(ScopeLabel).where(ScopeLabel.org_id == org_id).where(ScopeLabel.level == level)
        row = session.exec(statement).first()
        if row is None:
            row = ScopeLabel(org_id=org_id, level=level, label=cleaned)
        else:
            row.label = cleaned
            row.changed_at = now_utc()
        session.add(row)
        return row

    def _commit(self, session: Session) -> None:
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError("scope labels changed concurrently, retry") from exc

    def get_scope_labels_with_defaults(self, org_id: str) -> list[ScopeLabelRead]:
        with self._session() as session:
            stored = self._stored(session, org_id)
        labels: list[ScopeLabelRead] = []
        for level in range(1, SCOPE_LEVEL_COUNT + 1):
            row = stored.get(level)
            if row is not None:
                labels.append(_label_read(row))
            else:
                labels.append(
                    ScopeLabelRead(org_id=org_id, level=level, label=DEFAULT_SCOPE_LABELS[level], is_default=True)
                )
        return labels

    def upsert_scope_label(self, org_id: str, level: int, label: str) -> ScopeLabelRead:
        with self._session() as session:
            self._require_org(session, org_id)
            row = self._write(session, org_id, level, label)
            self._commit(session)
            session.refresh(row)
            return _label_read(row)

    def batch_upsert_scope_labels(self, org_id: str, items: Iterable[ScopeLabelBatchItem]) -> list[ScopeLabelRead]:
        # Later entries for the same level win.
        wanted = {item.level: item.label for item in items}
        with self._session() as session:
            self._require_org(session, org_id)
            rows = [self._write(session, org_id, level, wanted[level]) for level in sorted(wanted)]
            self._commit(session)
            for row in rows:
                session.refresh(row)
            result = [_label_read(row) for row in rows]
        logger.info("scope labels updated", org_id=org_id, levels=sorted(wanted))
        return result

    def delete_scope_label(self, org_id: str, level: int) -> None:
        self._check_level(level)
        with self._session() as session:
            row = self._stored(session, org_id).get(level)
            if row is None:
                raise NotFoundError("scope label")
            session.delete(row)
            session.commit()
