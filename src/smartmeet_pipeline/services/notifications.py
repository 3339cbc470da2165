"""
Уведомления владельцу (SQL-реализация sink'а).
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from smartmeet_pipeline.common.errors import StorageError
from smartmeet_pipeline.common.time import utc_now
from smartmeet_pipeline.domain.enums import NotificationKind
from smartmeet_pipeline.storage.db import db_session
from smartmeet_pipeline.storage.models import Notification


@dataclass
class NotificationMessage:
    title: str
    message: str
    kind: NotificationKind
    link: str | None = None


def job_link(job_id: str) -> str:
    return f"/dashboard/recordings/{job_id}"


class SqlNotificationSink:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def notify(self, owner_id: str, msg: NotificationMessage) -> None:
        try:
            with db_session(self.session_factory) as session:
                session.add(
                    Notification(
                        owner_id=owner_id,
                        title=msg.title,
                        message=msg.message,
                        kind=msg.kind,
                        link=msg.link,
                        created_at=utc_now(),
                        read=False,
                    )
                )
        except SQLAlchemyError as e:
            raise StorageError("Notification write failed", {"err": str(e)[:200]}) from e

    def list_for_owner(self, owner_id: str, *, limit: int = 50) -> list[NotificationMessage]:
        with db_session(self.session_factory) as session:
            rows = session.execute(
                select(Notification)
                .where(Notification.owner_id == owner_id)
                .order_by(Notification.id.desc())
                .limit(max(1, limit))
            ).scalars()
            return [
                NotificationMessage(title=r.title, message=r.message, kind=r.kind, link=r.link)
                for r in rows
            ]
